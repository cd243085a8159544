"""
Dependencies for admin authentication and access to the job system on app state.
"""
import hashlib
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from payment_reconciliation import config
from payment_reconciliation.jobs.queue_manager import JobQueueManager
from payment_reconciliation.services.reconciliation_scheduler import ReconciliationScheduler
from payment_reconciliation.utils import get_logger

logger = get_logger(__name__)
security = HTTPBearer(auto_error=False)


def require_admin_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """
    Validate the admin bearer token.

    Returns:
        str: A short, non-secret identifier of the caller for audit logs

    Raises:
        HTTPException: 503 when no token is configured, 401 when missing, 403 when wrong
    """
    expected = config.ADMIN_API_TOKEN
    if not expected:
        logger.error("Admin endpoint called but ADMIN_API_TOKEN is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin access is not configured",
        )
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not secrets.compare_digest(credentials.credentials, expected):
        logger.warning("Admin authentication failed", token_length=len(credentials.credentials))
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin token",
        )
    return admin_actor_id(expected)


def admin_actor_id(token: str) -> str:
    """Audit name for a token holder: a digest prefix, never token text."""
    return f"admin:{hashlib.sha256(token.encode('utf-8')).hexdigest()[:8]}"


def _from_state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name.replace('_', ' ').capitalize()} not available",
        )
    return value


def get_scheduler(request: Request) -> ReconciliationScheduler:
    return _from_state(request, "reconciliation_scheduler")


def get_queue_manager(request: Request) -> JobQueueManager:
    return _from_state(request, "queue_manager")
