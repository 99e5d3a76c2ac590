"""
AuthCentral Lifecycle Event Publisher
Fire-and-forget delivery of authentication events to the external broker,
with bounded queueing, retry/backoff and dead-letter logging
"""
import asyncio
import json
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
    ParamValidationError,
)
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import Settings
from ..errors import BrokerUnavailable, PayloadRejected
from ..utils import generate_secure_id, utcnow

logger = logging.getLogger(__name__)
dead_letter_logger = logging.getLogger("authcentral.events.deadletter")


class EventType(str, Enum):
    """Lifecycle events published for downstream consumers"""
    USER_REGISTERED = "user_registered"
    USER_LOGGED_IN = "user_loggedIn"


class PublishOutcome(str, Enum):
    DELIVERED = "delivered"
    REJECTED = "rejected"
    EXHAUSTED = "exhausted"
    DROPPED = "dropped"


@dataclass(frozen=True)
class OutboundEvent:
    event_type: EventType
    attributes: Dict[str, str]
    payload: Dict[str, Any]
    event_id: str = field(default_factory=generate_secure_id)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def create(cls, event_type: EventType, tenant: str, payload: Dict[str, Any]) -> "OutboundEvent":
        # Attribute keys are what subscriber filter policies match on; keep them stable
        attributes = {"eventType": event_type.value, "business": tenant}
        return cls(event_type=event_type, attributes=attributes, payload=dict(payload))

    def to_message(self) -> Dict[str, Any]:
        return {
            "eventType": self.event_type.value,
            "attributes": dict(self.attributes),
            "payload": dict(self.payload),
        }


class EventBroker(ABC):
    """External distribution system boundary"""

    @abstractmethod
    async def send(self, event: OutboundEvent) -> None:
        """Deliver one event; raise BrokerUnavailable or PayloadRejected on failure"""

    async def close(self) -> None:
        return None


class LoggingEventBroker(EventBroker):
    """Used when no broker target is configured"""

    async def send(self, event: OutboundEvent) -> None:
        logger.info(f"Event {event.event_id} (no broker configured): {json.dumps(event.to_message(), default=str)}")


TRANSIENT_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "ThrottledException",
    "RequestLimitExceeded",
    "InternalError",
    "InternalFailure",
    "ServiceUnavailable",
    "KMSThrottling",
}


def classify_aws_error(error: Exception) -> Exception:
    """Map a botocore failure onto the broker error taxonomy"""
    if isinstance(error, ClientError):
        details = error.response.get("Error", {})
        code = details.get("Code", "")
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        message = f"SNS {code}: {details.get('Message', '')}"
        if code in TRANSIENT_ERROR_CODES or status >= 500:
            return BrokerUnavailable(message)
        return PayloadRejected(message)
    if isinstance(error, (NoCredentialsError, ParamValidationError)):
        return PayloadRejected(f"SNS request cannot succeed: {error}")
    if isinstance(error, BotoCoreError):
        return BrokerUnavailable(f"SNS unreachable: {error}")
    return error


class SNSEventBroker(EventBroker):
    """AWS SNS topic; message attributes drive subscription filter policies"""

    def __init__(
        self,
        topic_arn: str,
        region_name: str,
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        max_workers: int = 4,
    ):
        self.topic_arn = topic_arn
        self.region_name = region_name
        self._credentials = {
            "aws_access_key_id": aws_access_key_id,
            "aws_secret_access_key": aws_secret_access_key,
        }
        self._client = None
        self._client_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="sns-publish")

    def _get_client(self):
        with self._client_lock:
            if self._client is None:
                self._client = boto3.client("sns", region_name=self.region_name, **self._credentials)
                logger.info(f"SNS client initialized in region {self.region_name}")
            return self._client

    def _publish_sync(self, event: OutboundEvent) -> Dict[str, Any]:
        """Blocking publish; runs on the executor"""
        message_attributes = {
            key: {"DataType": "String", "StringValue": value}
            for key, value in event.attributes.items()
        }
        return self._get_client().publish(
            TopicArn=self.topic_arn,
            Message=json.dumps(event.to_message(), default=str),
            MessageAttributes=message_attributes,
        )

    async def send(self, event: OutboundEvent) -> None:
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(self._executor, self._publish_sync, event)
        except (ClientError, BotoCoreError) as e:
            raise classify_aws_error(e) from e
        logger.debug(f"Event {event.event_id} accepted as SNS message {response.get('MessageId')}")

    async def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


class TenantEventPolicy:
    """Which tenants get user_loggedIn events; registrations always publish"""

    def __init__(self, login_event_tenants: Iterable[str] = ()):
        self.login_event_tenants = {t.strip() for t in login_event_tenants if t.strip()}

    def should_publish(self, event_type: EventType, tenant: str) -> bool:
        if event_type is EventType.USER_LOGGED_IN:
            return "*" in self.login_event_tenants or tenant in self.login_event_tenants
        return True


class EventPublisher:
    """Queue-backed publisher; the request path only ever calls submit()"""

    def __init__(
        self,
        broker: EventBroker,
        max_attempts: int = 5,
        backoff_seconds: float = 0.5,
        backoff_max_seconds: float = 8.0,
        queue_size: int = 1000,
        workers: int = 2,
    ):
        self.broker = broker
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.worker_count = workers
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._workers: List[asyncio.Task] = []

    @classmethod
    def from_settings(cls, settings: Settings) -> "EventPublisher":
        sns_config = settings.events.sns_config
        if sns_config["topic_arn"]:
            broker: EventBroker = SNSEventBroker(**sns_config)
        else:
            logger.warning("EVENT_TOPIC_ARN not set; lifecycle events will only be logged")
            broker = LoggingEventBroker()
        return cls(broker, **settings.events.delivery_config)

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    async def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"event-publisher-{i}")
            for i in range(self.worker_count)
        ]
        logger.info(f"Event publisher started with {self.worker_count} workers")

    async def stop(self, drain_timeout: float = 5.0) -> None:
        """Give queued events a bounded chance to go out, then stop workers"""
        if self._workers:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Event publisher stopped with {self.queue_depth} undelivered events")
            for task in self._workers:
                task.cancel()
            await asyncio.gather(*self._workers, return_exceptions=True)
            self._workers = []
        await self.broker.close()

    def submit(self, event: OutboundEvent) -> bool:
        """Enqueue without waiting; never raises into the caller"""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._dead_letter(event, PublishOutcome.DROPPED, "publish queue full")
            return False
        return True

    async def publish(self, event: OutboundEvent) -> PublishOutcome:
        """Deliver one event, retrying transient broker failures with backoff"""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=self.backoff_max_seconds),
            retry=retry_if_exception_type(BrokerUnavailable),
            before_sleep=self._log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    await self.broker.send(event)
        except PayloadRejected as e:
            self._dead_letter(event, PublishOutcome.REJECTED, e.message)
            return PublishOutcome.REJECTED
        except BrokerUnavailable as e:
            self._dead_letter(event, PublishOutcome.EXHAUSTED, e.message)
            return PublishOutcome.EXHAUSTED

        logger.info(f"Published {event.event_type.value} event {event.event_id}")
        return PublishOutcome.DELIVERED

    async def _worker(self, worker_id: int) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.publish(event)
            except Exception:
                # A broken event must not take the worker down with it
                logger.exception(f"Worker {worker_id} failed to publish event {event.event_id}")
            finally:
                self._queue.task_done()

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(f"Broker unavailable (attempt {retry_state.attempt_number}/{self.max_attempts}): {error}")

    @staticmethod
    def _dead_letter(event: OutboundEvent, outcome: PublishOutcome, reason: str) -> None:
        dead_letter_logger.error(
            json.dumps(
                {
                    "event_id": event.event_id,
                    "outcome": outcome.value,
                    "reason": reason,
                    "message": event.to_message(),
                },
                default=str,
            )
        )


__all__ = [
    "EventType",
    "PublishOutcome",
    "OutboundEvent",
    "EventBroker",
    "LoggingEventBroker",
    "SNSEventBroker",
    "classify_aws_error",
    "TenantEventPolicy",
    "EventPublisher",
]
