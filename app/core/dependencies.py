from fastapi import Header, Request
from slowapi.util import get_remote_address

from app.gateway.gateway import ActionGateway

_gateway: ActionGateway | None = None


def get_gateway() -> ActionGateway:
    """Process-wide gateway, created on first use."""
    global _gateway
    if _gateway is None:
        _gateway = ActionGateway()
    return _gateway


async def close_gateway() -> None:
    global _gateway
    if _gateway is not None:
        await _gateway.aclose()
        _gateway = None


def get_client_key(
    request: Request,
    x_client_key: str | None = Header(None, description="Caller identity for per-client rate limiting"),
) -> str:
    """Rate-limit key: the X-Client-Key header, or the caller's address."""
    if x_client_key and x_client_key.strip():
        return x_client_key.strip()
    return get_remote_address(request)
