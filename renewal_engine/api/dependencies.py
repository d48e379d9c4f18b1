"""FastAPI dependencies for the automation endpoints."""

from fastapi import HTTPException, Request, status

from renewal_engine.services.orchestrator import AutomationOrchestrator


def get_orchestrator(request: Request) -> AutomationOrchestrator:
    """The orchestrator built by the application lifespan."""
    orchestrator: AutomationOrchestrator | None = getattr(
        request.app.state, "orchestrator", None
    )
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Automation not initialized",
        )
    return orchestrator
