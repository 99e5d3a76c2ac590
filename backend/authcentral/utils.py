"""
AuthCentral Utilities
Logging setup, request helpers and identifier generation
"""
import ipaddress
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Sequence, Union

from fastapi import Request

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("authcentral.security")

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging once; later calls only adjust the level"""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    root.setLevel(level.upper())


def parse_trusted_proxies(entries: Iterable[str]) -> List[IPNetwork]:
    """Turn addresses or CIDR ranges into networks; bad entries are skipped with a warning"""
    networks = []
    for entry in entries:
        try:
            networks.append(ipaddress.ip_network(entry.strip(), strict=False))
        except ValueError:
            logger.warning(f"Ignoring invalid trusted proxy entry: {entry!r}")
    return networks


def _is_trusted(address: str, trusted_proxies: Sequence[IPNetwork]) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return any(ip in network for network in trusted_proxies)


def get_client_ip(request: Request, trusted_proxies: Sequence[IPNetwork] = ()) -> str:
    """Extract client IP address from request

    X-Forwarded-For is only read when the direct peer is a trusted proxy, and then
    the rightmost address not belonging to a trusted proxy wins.
    """
    peer = request.client.host if request.client else "unknown"
    if not trusted_proxies or not _is_trusted(peer, trusted_proxies):
        return peer

    forwarded = [part.strip() for part in request.headers.get("X-Forwarded-For", "").split(",") if part.strip()]
    for address in reversed(forwarded):
        if not _is_trusted(address, trusted_proxies):
            return address
    return forwarded[0] if forwarded else peer


def normalize_email(email: str) -> str:
    return email.strip().lower()


def generate_secure_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def log_security_event(event_type: str, details: Dict[str, Any], level: int = logging.INFO) -> None:
    """Emit one structured line per security-relevant outcome"""
    event = {
        "timestamp": utcnow().isoformat(),
        "type": event_type,
        "details": details,
    }
    security_logger.log(level, json.dumps(event, default=str))


__all__ = [
    "setup_logging",
    "parse_trusted_proxies",
    "get_client_ip",
    "normalize_email",
    "generate_secure_id",
    "utcnow",
    "log_security_event",
]
