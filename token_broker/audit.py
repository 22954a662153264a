"""
Audit logging. Security-relevant broker events only; no tokens, codes, or secrets.
"""
import logging

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from token_broker.models import AuditLog

logger = logging.getLogger(__name__)

EVENT_CALLBACK_OK = "callback_ok"
EVENT_CALLBACK_FAIL = "callback_fail"
EVENT_REFRESH_OK = "refresh_ok"
EVENT_REFRESH_FAIL = "refresh_fail"
EVENT_PERSIST_FAIL = "persist_fail"
EVENT_DISCONNECT_OK = "disconnect_ok"
EVENT_DISCONNECT_FAIL = "disconnect_fail"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (request.client.host). Forwarding headers are not trusted."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


class AuditTrail:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def record(
        self,
        event_type: str,
        *,
        realm_id: str | None = None,
        ip: str | None = None,
        outcome: str = OUTCOME_SUCCESS,
        error_kind: str | None = None,
    ) -> None:
        """Append one audit record. A failed audit write never fails the request."""
        db = self._session_factory()
        try:
            db.add(
                AuditLog(
                    event_type=event_type,
                    realm_id=realm_id,
                    ip=ip,
                    outcome=outcome,
                    error_kind=error_kind,
                )
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("audit write failed for %s: %s", event_type, type(e).__name__)
        finally:
            db.close()

