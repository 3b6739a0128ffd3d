"""
Request Audit Log

One row per mutating or sensitive request. Writes never fail the request
they describe, but a failed write is always logged.
"""
import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.db_models import RequestAuditLogDB

logger = logging.getLogger(__name__)


def write_request_audit_log(
    db: Session,
    request_id: str,
    route: str,
    action: str,
    status_code: int,
    org_id: Optional[str] = None,
    user_id: Optional[str] = None,
    error_code: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    commit: bool = True,
) -> bool:
    """
    Append an audit record.

    Args:
        db: Session
        request_id: Request correlation id
        route: Route path
        action: Stable action name (e.g. intervention_execute)
        status_code: HTTP status returned to the caller
        org_id: Organization scope
        user_id: Acting user
        error_code: Error code when the request failed
        metadata: Action-specific detail
        commit: Commit after writing

    Returns:
        True when the record was stored
    """
    try:
        with db.begin_nested():
            db.add(RequestAuditLogDB(
                id=str(uuid4()),
                request_id=request_id,
                org_id=org_id,
                user_id=user_id,
                route=route,
                action=action,
                status_code=status_code,
                error_code=error_code,
                metadata_json=metadata or {},
            ))
    except SQLAlchemyError:
        logger.exception(f"Audit log write failed: action={action} request_id={request_id} org={org_id}")
        return False

    if commit:
        try:
            db.commit()
        except SQLAlchemyError:
            logger.exception(f"Audit log commit failed: action={action} request_id={request_id} org={org_id}")
            db.rollback()
            return False
    return True
