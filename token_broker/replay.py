"""
Replay Guard: atomic check-and-reserve of consumed authorization codes and state nonces.

MemoryReplayGuard is single-process only (lock-protected dict). SqlReplayGuard uses a
primary-key insert in the shared database, so two instances racing on one key cannot
both see FRESH. Entries expire after ttl_seconds and both backends drop expired
entries whenever a new key is reserved, which bounds storage.
"""
import hashlib
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Protocol

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from token_broker.models import ConsumedKey

logger = logging.getLogger(__name__)


class Reservation(str, Enum):
    FRESH = "fresh"
    ALREADY_CONSUMED = "already_consumed"


def code_key(code: str) -> str:
    """Replay key for an authorization code. Codes are hashed: arbitrary length, never stored raw."""
    return "code:" + hashlib.sha256(code.encode("utf-8")).hexdigest()


def state_key(nonce: str) -> str:
    return "state:" + hashlib.sha256(nonce.encode("utf-8")).hexdigest()


class ReplayGuard(Protocol):
    ttl_seconds: int

    def check_and_reserve(self, key: str) -> Reservation: ...

    def release(self, key: str) -> None: ...

    def purge_expired(self) -> int: ...


class MemoryReplayGuard:
    def __init__(self, ttl_seconds: int = 600):
        self.ttl_seconds = ttl_seconds
        self._entries: dict[str, float] = {}
        self._lock = threading.Lock()

    def check_and_reserve(self, key: str) -> Reservation:
        now = time.monotonic()
        with self._lock:
            expires_at = self._entries.get(key)
            if expires_at is not None and expires_at > now:
                return Reservation.ALREADY_CONSUMED
            self._entries[key] = now + self.ttl_seconds
            self._purge_locked(now)
            return Reservation.FRESH

    def release(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked(time.monotonic())

    def _purge_locked(self, now: float) -> int:
        expired = [k for k, exp in self._entries.items() if exp <= now]
        for k in expired:
            del self._entries[k]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


def _utc_now_naive() -> datetime:
    # SQLite DateTime columns round-trip naive values; keep everything naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SqlReplayGuard:
    def __init__(self, session_factory: sessionmaker, ttl_seconds: int = 600):
        self._session_factory = session_factory
        self.ttl_seconds = ttl_seconds

    def check_and_reserve(self, key: str) -> Reservation:
        now = _utc_now_naive()
        db = self._session_factory()
        try:
            # Expired records never block a key and are dropped on every reservation
            db.execute(delete(ConsumedKey).where(ConsumedKey.expires_at <= now))
            db.add(ConsumedKey(key=key, consumed_at=now, expires_at=now + timedelta(seconds=self.ttl_seconds)))
            db.commit()
        except IntegrityError:
            db.rollback()
            return Reservation.ALREADY_CONSUMED
        finally:
            db.close()
        return Reservation.FRESH

    def release(self, key: str) -> None:
        db = self._session_factory()
        try:
            db.execute(delete(ConsumedKey).where(ConsumedKey.key == key))
            db.commit()
        finally:
            db.close()

    def purge_expired(self) -> int:
        db = self._session_factory()
        try:
            result = db.execute(delete(ConsumedKey).where(ConsumedKey.expires_at <= _utc_now_naive()))
            db.commit()
            removed = result.rowcount or 0
        finally:
            db.close()
        if removed:
            logger.debug("purged %d expired replay records", removed)
        return removed
