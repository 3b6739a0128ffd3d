"""
Shared router dependencies

Capabilities and the rate limiter live on app.state (set in the lifespan);
routes read them through these dependencies so tests can override them.
"""
from contextlib import contextmanager
from typing import Any, Dict, Iterator

from fastapi import Request
from sqlalchemy.orm import Session

from ..auth import Actor
from ..services.adoption import (
    AdoptionError, RateLimiter, SchemaCapabilities, write_request_audit_log,
)


def get_capabilities(request: Request) -> SchemaCapabilities:
    return request.app.state.capabilities


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def request_id_of(request: Request) -> str:
    return getattr(request.state, "request_id", None) or "unknown"


@contextmanager
def audited(
    db: Session,
    request: Request,
    actor: Actor,
    action: str,
    success_status: int = 200,
) -> Iterator[Dict[str, Any]]:
    """
    Write exactly one audit record for the wrapped route body.

    Yields a metadata dict the route may fill in. On failure the session is
    rolled back, the failure is recorded with its error code, and the error
    propagates to the app's exception handlers.
    """
    metadata: Dict[str, Any] = {}
    common = dict(
        request_id=request_id_of(request),
        route=request.url.path,
        action=action,
        org_id=actor.org_id,
        user_id=actor.user_id,
        metadata=metadata,
    )
    try:
        yield metadata
    except AdoptionError as e:
        db.rollback()
        write_request_audit_log(db, status_code=e.status_code, error_code=e.code, **common)
        raise
    except Exception:
        db.rollback()
        write_request_audit_log(db, status_code=500, error_code="INTERNAL_ERROR", **common)
        raise
    write_request_audit_log(db, status_code=success_status, **common)
