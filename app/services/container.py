from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from app.config import Settings
from app.database import Database
from app.services.notifications import Notifier, build_notifier
from app.services.otp import OtpEngine, utcnow
from app.services.otp_store import SqlOtpRecordStore
from app.services.reaper import OtpReaper
from app.services.sessions import SessionStore
from app.services.tokens import TokenService
from app.services.users import UserStore


@dataclass
class Services:
    settings: Settings
    database: Database
    users: UserStore
    sessions: SessionStore
    tokens: TokenService
    otp: OtpEngine
    notifier: Notifier
    reaper: OtpReaper

    def start(self) -> None:
        self.database.init_db()
        self.reaper.start()

    def stop(self) -> None:
        self.reaper.shutdown()
        self.database.dispose()


def build_services(
    settings: Settings,
    notifier: Optional[Notifier] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    database = Database(settings.database_url, settings.store_timeout_seconds)
    tokens = TokenService(settings)
    engine = OtpEngine(
        SqlOtpRecordStore(database),
        ttl_seconds=settings.otp_ttl_seconds,
        clock=clock,
        debug=settings.otp_debug,
    )
    return Services(
        settings=settings,
        database=database,
        users=UserStore(database),
        sessions=SessionStore(database, tokens.refresh_ttl, clock=clock),
        tokens=tokens,
        otp=engine,
        notifier=notifier or build_notifier(settings),
        reaper=OtpReaper(engine, settings.otp_reaper_interval_seconds),
    )
