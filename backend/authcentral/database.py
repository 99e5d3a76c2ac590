"""
AuthCentral Database Connection & Session Management
Engine ownership, per-request sessions and health checks
"""
import logging
from typing import Any, Dict, Generator, Optional

from fastapi import Request
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


class DatabaseManager:
    """Owns the engine and session factory for one database URL"""

    def __init__(self, url: str, pool_settings: Optional[Dict[str, Any]] = None):
        self.url = url
        self.pool_settings = pool_settings or {}
        self.engine: Optional[Engine] = None
        self.session_factory: Optional[sessionmaker] = None

    def initialize(self) -> None:
        """Create the engine and any missing tables"""
        engine_args: Dict[str, Any] = dict(self.pool_settings)
        if self.url.startswith("sqlite"):
            engine_args["connect_args"] = {"check_same_thread": False}
            if self.url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, otherwise every checkout sees an empty database
                engine_args["poolclass"] = StaticPool

        self.engine = create_engine(self.url, **engine_args)
        self.session_factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

        # Register models on the metadata before create_all
        from . import models  # noqa: F401

        Base.metadata.create_all(self.engine)
        logger.info("Database initialized")

    def get_session(self) -> Session:
        if not self.session_factory:
            raise RuntimeError("Database not initialized")
        return self.session_factory()

    def health_check(self) -> Dict[str, Any]:
        health = {"status": "healthy"}
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
        except (SQLAlchemyError, RuntimeError) as e:
            logger.error(f"Database health check failed: {e}")
            health = {"status": "unhealthy", "error": str(e)}
        return health

    def close(self) -> None:
        if self.engine:
            self.engine.dispose()
            logger.info("Database connections closed")


def get_db(request: Request) -> Generator[Session, None, None]:
    """Dependency for getting database session in FastAPI routes"""
    session = request.app.state.db_manager.get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = ["Base", "DatabaseManager", "get_db"]
