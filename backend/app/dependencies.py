"""
Vocilia Verification - Request Dependencies

Collaborators are created once in the application lifespan and kept on
app.state; these dependencies hand them to the routers per request.
"""
from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from .config import Settings
from .database import get_db
from .services.verification import CycleOrchestrator
from .services.errors import (
    VerificationError, ValidationError, RecordNotFoundError, InvalidStateTransitionError,
    DuplicateError, ExternalDependencyError,
)


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_orchestrator(request: Request, db: Session = Depends(get_db)) -> CycleOrchestrator:
    """Orchestrator bound to this request's session and the process-wide collaborators."""
    state = request.app.state
    return CycleOrchestrator(
        db,
        settings=state.settings,
        context_provider=state.context_provider,
        behavioral_provider=state.behavioral_provider,
        lock_registry=state.cycle_locks,
        invoice_sink=getattr(state, "invoice_sink", None),
    )


async def verify_internal_key(request: Request, x_internal_key: str = Header(...)):
    """Verify internal API key for scheduler endpoints."""
    if x_internal_key != request.app.state.settings.internal_api_key:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


def http_error(exc: VerificationError) -> HTTPException:
    """Map a verification error onto an HTTP status."""
    if isinstance(exc, RecordNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (DuplicateError, InvalidStateTransitionError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ExternalDependencyError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))
