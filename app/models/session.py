from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String

from app.database import Base


class SessionEntry(Base):
    """One signed-in device; access and refresh tokens carry its ``token`` as ``sid``."""

    __tablename__ = "auth_sessions"

    id = Column(Integer, primary_key=True)
    token = Column(String(64), nullable=False, unique=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    # "password", "otp" or "register"
    login_method = Column(String(16), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_refreshed_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_auth_sessions_user_revoked", "user_id", "revoked_at"),
        Index("ix_auth_sessions_expires_at", "expires_at"),
    )
