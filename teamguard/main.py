from __future__ import annotations

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .exceptions import (
    AccessControlError, ApprovalRequiredError, NotFoundError, PermissionDeniedError,
    PolicyViolationError, ProvisioningAuthError, ValidationError
)
from .models.api import APIError, HealthResponse
from .startup import startup
from .endpoints.rbac import router as rbac_router
from .endpoints.policies import router as policies_router
from .endpoints.vaults import router as vaults_router
from .endpoints.scim import admin_router as provisioning_router, router as scim_router

app = FastAPI(title="TeamGuard API", version=__version__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(rbac_router)
app.include_router(policies_router)
app.include_router(vaults_router)
app.include_router(scim_router)
app.include_router(provisioning_router)


@app.on_event("startup")
async def startup_event():
    await startup()


def _error_response(status_code: int, error: str, exc: AccessControlError) -> JSONResponse:
    body = APIError(error=error, message=exc.message, details=exc.details or None)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return _error_response(status.HTTP_400_BAD_REQUEST, "validation_error", exc)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error_response(status.HTTP_404_NOT_FOUND, "not_found", exc)


@app.exception_handler(PermissionDeniedError)
async def permission_denied_handler(request: Request, exc: PermissionDeniedError):
    error = "policy_violation" if isinstance(exc, PolicyViolationError) else "permission_denied"
    return _error_response(status.HTTP_403_FORBIDDEN, error, exc)


@app.exception_handler(ApprovalRequiredError)
async def approval_required_handler(request: Request, exc: ApprovalRequiredError):
    return _error_response(status.HTTP_202_ACCEPTED, "approval_required", exc)


@app.exception_handler(ProvisioningAuthError)
async def provisioning_auth_handler(request: Request, exc: ProvisioningAuthError):
    response = _error_response(status.HTTP_401_UNAUTHORIZED, "invalid_api_key", exc)
    response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(version=__version__)
