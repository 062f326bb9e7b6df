import logging
import secrets
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from ..core.config import settings
from ..services.credits import CreditLedger
from ..services.jobs import JobStore
from ..services.orchestrator import JobOrchestrator
from ..services.runtime import Runtime

logger = logging.getLogger(__name__)


def get_runtime(request: Request) -> Runtime:
    """The service graph built in the app lifespan."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting")
    return runtime


def get_orchestrator(runtime: Runtime = Depends(get_runtime)) -> JobOrchestrator:
    return runtime.orchestrator


def get_ledger(runtime: Runtime = Depends(get_runtime)) -> CreditLedger:
    return runtime.ledger


def get_job_store(runtime: Runtime = Depends(get_runtime)) -> JobStore:
    return runtime.jobs


async def require_internal_token(
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Only the bot process may call the API: check ``Authorization: Bearer <token>``."""
    expected = settings.internal_api_token
    if not expected:
        if settings.is_dev:
            return
        logger.error("Internal API token is not configured; set GENBROKER_INTERNAL_API_TOKEN")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal API token not configured",
        )

    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization format. Use: Bearer <token>",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not secrets.compare_digest(token.strip(), expected):
        logger.warning("Rejected internal API call with an invalid token")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid token")


async def require_admin(
    x_acting_user: Annotated[str | None, Header()] = None,
) -> str:
    """Admin routes also name the Discord user acting; it must be a configured admin."""
    if not x_acting_user or x_acting_user not in settings.admin_user_ids:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return x_acting_user
