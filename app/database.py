import logging
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

LOGGER = logging.getLogger(__name__)

Base = declarative_base()


def _build_database_url(raw_url: str) -> str:
    if raw_url.startswith("postgresql://"):
        return raw_url.replace("postgresql://", "postgresql+psycopg://", 1)
    return raw_url


def _engine_options(url: str, timeout_seconds: float) -> dict:
    if url.startswith("sqlite"):
        options = {
            "connect_args": {"check_same_thread": False, "timeout": timeout_seconds}
        }
        if url in {"sqlite://", "sqlite:///:memory:"}:
            options["poolclass"] = StaticPool
        return options
    if url.startswith("postgresql"):
        timeout_ms = int(timeout_seconds * 1000)
        return {
            "pool_pre_ping": True,
            "connect_args": {
                "connect_timeout": max(1, int(timeout_seconds)),
                "options": f"-c statement_timeout={timeout_ms}",
            },
        }
    return {"pool_pre_ping": True}


class Database:
    def __init__(self, url: str, timeout_seconds: float = 5.0) -> None:
        if not url:
            raise RuntimeError("DATABASE_URL is not configured")
        self.url = _build_database_url(url)
        self.engine = create_engine(
            self.url, **_engine_options(self.url, timeout_seconds)
        )
        self._session_factory = sessionmaker(
            bind=self.engine, autoflush=False, autocommit=False, expire_on_commit=False
        )

    def init_db(self) -> None:
        from app.models import otp as _otp  # noqa: F401
        from app.models import session as _session  # noqa: F401
        from app.models import user as _user  # noqa: F401

        Base.metadata.create_all(bind=self.engine)
        LOGGER.info("Database schema ready")

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session_scope(self):
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
