"""
SQLAlchemy models for the broker: consumed replay keys, persisted token sets, audit log.
"""
from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ConsumedKey(Base):
    """Replay record. Primary key insert is the atomic check-and-set."""
    __tablename__ = "consumed_keys"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    consumed_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)


class StoredTokenSet(Base):
    """Downstream token store keyed by realm/tenant id."""
    __tablename__ = "token_sets"

    realm_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_type: Mapped[str] = mapped_column(String(32), nullable=False, default="Bearer")
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    refresh_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)

    def __repr__(self) -> str:
        return f"StoredTokenSet(realm_id={self.realm_id!r}, expires_at={self.expires_at!r})"


class AuditLog(Base):
    """Security-relevant broker events. No tokens, codes, or secrets stored."""
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    realm_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)  # success | fail
    error_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)
