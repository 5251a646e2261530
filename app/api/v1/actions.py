"""Action dispatch endpoints — the HTTP face of the action gateway."""

from typing import Any

from fastapi import APIRouter, Body, Depends, Request

from app.core.config import settings
from app.core.dependencies import get_client_key, get_gateway
from app.core.rate_limit import limiter
from app.gateway.gateway import ActionGateway
from app.gateway.types import ActionEnvelope
from app.schemas.action import ActionResponse, ErrorResponse, ProvidersResponse

router = APIRouter(tags=["actions"])

_ERROR_RESPONSES = {
    status: {"model": ErrorResponse}
    for status in (400, 404, 429, 499, 502, 503, 504)
}


@router.post("/actions", response_model=ActionResponse, responses=_ERROR_RESPONSES)
async def dispatch_action(
    payload: dict[str, Any] = Body(
        ...,
        examples=[{"resource": "search", "action": "web", "parameters": {"query": "fastapi lifespan"}}],
    ),
    client_key: str = Depends(get_client_key),
    gateway: ActionGateway = Depends(get_gateway),
):
    """Dispatch one action envelope.

    Body: ``{resource, action, parameters, sessionId?, providerHint?, timeoutSeconds?}``.
    Gateway errors are rendered by the application's GatewayError handler.
    """
    envelope = ActionEnvelope.from_dict(payload)
    result = await gateway.dispatch(
        envelope,
        client_key=client_key,
        timeout=payload.get("timeoutSeconds", payload.get("timeout_seconds")),
    )
    return result.to_dict()


@router.get("/actions/providers", response_model=ProvidersResponse)
@limiter.limit(settings.status_rate_limit)
async def list_providers(request: Request, gateway: ActionGateway = Depends(get_gateway)):
    """Active mode with the providers and actions available per resource."""
    handles = await gateway.mode_selector.all_adapter_sets()
    return {
        "mode": gateway.mode_selector.endpoint_class.value,
        "resources": [h.to_dict() for h in handles],
    }


@router.get("/gateway/status")
@limiter.limit(settings.status_rate_limit)
async def gateway_status(request: Request, gateway: ActionGateway = Depends(get_gateway)):
    return await gateway.get_status()
