"""
Automation API Routes - Operational endpoints for the background engine.

NO DICTIONARIES - All request/response bodies are Pydantic models.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from structlog import get_logger

from renewal_engine.api.dependencies import get_orchestrator
from renewal_engine.exceptions import ClientNotFoundError, NetworkAutomationError
from renewal_engine.models.api import (
    AutomationStatusResponse,
    ClientEventRequest,
    ClientEventResponse,
)
from renewal_engine.services.orchestrator import AutomationOrchestrator

logger = get_logger(__name__)

router = APIRouter()


@router.get("/v1/automation/status", response_model=AutomationStatusResponse)
async def automation_status(
    orchestrator: AutomationOrchestrator = Depends(get_orchestrator),
) -> AutomationStatusResponse:
    """Running/stopped state of each background process."""
    return AutomationStatusResponse(processes=orchestrator.status())


@router.post(
    "/v1/automation/clients/{client_id}/events",
    response_model=ClientEventResponse,
)
async def route_client_event(
    client_id: UUID,
    request: ClientEventRequest,
    orchestrator: AutomationOrchestrator = Depends(get_orchestrator),
) -> ClientEventResponse:
    """
    Route a client lifecycle event.

    payment_received re-runs the renewal decision and reports the action taken.
    """
    try:
        action = await orchestrator.route_client_event(client_id, request.event)

    except ClientNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Client not found",
        ) from exc

    except NetworkAutomationError as exc:
        logger.error("client_event_network_failed", client_id=str(client_id), error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Network automation failed: {exc.action}",
        ) from exc

    return ClientEventResponse(
        client_id=client_id,
        event=request.event,
        action=action.type if action else None,
        message=action.message if action else None,
    )
