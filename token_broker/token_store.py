"""
Downstream token store: one TokenSet per realm/tenant id, with absolute expiry.
"""
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from token_broker.exchange import TokenSet
from token_broker.models import StoredTokenSet

DEFAULT_REALM = "default"


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class TokenStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def save(self, realm_id: str | None, token_set: TokenSet) -> None:
        """Insert or replace the token set for realm_id. Refresh token is kept if the provider omitted it."""
        realm_id = realm_id or DEFAULT_REALM
        db = self._session_factory()
        try:
            row = db.get(StoredTokenSet, realm_id)
            if row is None:
                row = StoredTokenSet(realm_id=realm_id)
                db.add(row)
            row.access_token = token_set.access_token
            if token_set.refresh_token:
                row.refresh_token = token_set.refresh_token
            row.token_type = token_set.token_type
            row.expires_at = _naive_utc(token_set.expires_at)
            if token_set.refresh_expires_at is not None:
                row.refresh_expires_at = _naive_utc(token_set.refresh_expires_at)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get(self, realm_id: str | None) -> StoredTokenSet | None:
        db = self._session_factory()
        try:
            row = db.execute(
                select(StoredTokenSet).where(StoredTokenSet.realm_id == (realm_id or DEFAULT_REALM))
            ).scalar_one_or_none()
            if row is not None:
                db.expunge(row)
            return row
        finally:
            db.close()

    def delete(self, realm_id: str | None) -> bool:
        db = self._session_factory()
        try:
            row = db.get(StoredTokenSet, realm_id or DEFAULT_REALM)
            if row is None:
                return False
            db.delete(row)
            db.commit()
            return True
        finally:
            db.close()
