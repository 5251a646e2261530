from typing import Any

from pydantic import BaseModel, Field


class ProviderIdentityResponse(BaseModel):
    resource: str
    providerName: str
    endpointClass: str


class ActionResponse(BaseModel):
    success: bool = True
    result: Any = None
    provider: ProviderIdentityResponse
    latencyMs: int = Field(ge=0)
    attempts: int = Field(ge=0)


class ErrorBody(BaseModel):
    kind: str
    message: str
    retryable: bool
    resetAt: str | None = None
    attempts: int | None = None
    upstreamStatus: int | None = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorBody


class AdapterSetResponse(BaseModel):
    resource: str
    endpointClass: str
    defaultProvider: str
    providers: dict[str, list[str]]  # provider name → supported actions


class ProvidersResponse(BaseModel):
    mode: str
    resources: list[AdapterSetResponse]
