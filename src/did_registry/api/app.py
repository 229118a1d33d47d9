"""HTTP binding for the registry service."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog
from fastapi import FastAPI, Header, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from did_registry.common.exceptions import (
    AuthenticationRequiredError,
    InvalidInputError,
    RegistryError,
)
from did_registry.common.types import DID
from did_registry.config import RegistrySettings
from did_registry.identity.documents import ServiceEndpoint
from did_registry.identity.identifiers import KeyPair, parse_did
from did_registry.observability import configure_logging
from did_registry.service import RegistryService

logger = structlog.get_logger()


class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    did: str
    public_key: str = Field(alias="publicKeyMultibase")
    claims: dict[str, Any]


class AuthorizeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    did: str
    org_id: str = Field(alias="orgId")
    attributes: list[str]
    # Used to sign the presentation, then dropped; never stored or echoed.
    holder_key: str = Field(alias="holderKey", repr=False)


class RevokeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    did: str
    org_id: str = Field(alias="orgId")


class AccessRequestBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    did: str
    org_id: str = Field(alias="orgId")
    attributes: list[str]


def create_app(service: RegistryService) -> FastAPI:
    """
    Build the FastAPI app around a started service.

    Registry errors map to their ``http_status``; request validation
    failures are reported as 400.
    """
    app = FastAPI(title="DID Registry")

    @app.exception_handler(RegistryError)
    async def registry_error_handler(request: Request, exc: RegistryError) -> JSONResponse:
        if exc.http_status >= 500:
            logger.error("request_failed", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        error = InvalidInputError(
            "Missing or malformed request fields",
            details={"fields": [".".join(str(p) for p in err["loc"]) for err in exc.errors()]},
        )
        return JSONResponse(status_code=error.http_status, content=error.to_dict())

    #region Registry

    @app.get("/api/health")
    async def health_endpoint() -> JSONResponse:
        report = await service.health()
        code = status.HTTP_200_OK if report["status"] == "UP" else status.HTTP_500_INTERNAL_SERVER_ERROR
        return JSONResponse(status_code=code, content=report)

    @app.post("/api/did/register", status_code=status.HTTP_201_CREATED)
    async def register_endpoint(body: RegisterRequest) -> dict[str, Any]:
        parse_did(body.did)
        subject_key = KeyPair.from_public(DID(body.did), body.public_key)
        registration = await service.register_subject(body.claims, subject_key)
        return registration.to_document()

    @app.get("/api/did")
    async def list_dids_endpoint() -> list[dict[str, Any]]:
        return [document.to_document() for document in await service.list_dids()]

    @app.get("/api/did/{did}")
    async def resolve_endpoint(did: str) -> dict[str, Any]:
        return (await service.resolve_did(did)).to_document()

    @app.post("/api/did/{did}/services")
    async def add_service_endpoint(did: str, body: ServiceEndpoint) -> dict[str, Any]:
        return (await service.update_did_document(did, body)).to_document()

    @app.post("/api/credentials/verify")
    async def verify_credential_endpoint(body: dict[str, Any]) -> dict[str, Any]:
        return (await service.verify_credential(body)).to_dict()

    @app.get("/api/credentials/{did}")
    async def get_credential_endpoint(did: str) -> dict[str, Any]:
        return (await service.get_credential(did)).to_document()

    #endregion

    #region Consent

    @app.post("/api/did/authorize")
    async def authorize_endpoint(body: AuthorizeRequest) -> dict[str, Any]:
        parse_did(body.did)
        holder_key = KeyPair.import_private(DID(body.did), body.holder_key)
        grant = await service.authorize(body.did, body.org_id, body.attributes, holder_key)
        return {
            "message": f"Organization {body.org_id} authorized to access {', '.join(grant.attributes)}",
            "authorization": grant.to_document(),
        }

    @app.post("/api/did/revoke")
    async def revoke_endpoint(body: RevokeRequest) -> dict[str, Any]:
        await service.revoke(body.did, body.org_id)
        return {"message": f"Authorization for {body.org_id} revoked"}

    @app.get("/api/did/{did}/authorizations")
    async def list_grants_endpoint(did: str) -> list[dict[str, Any]]:
        return [grant.to_document() for grant in await service.list_grants(subject_did=did)]

    @app.post("/api/presentations/verify")
    async def verify_presentation_endpoint(body: dict[str, Any]) -> dict[str, Any]:
        return (await service.verify_presentation(body)).to_dict()

    #endregion

    #region Organizations

    @app.get("/api/org/{org_id}/subjects/{did}")
    async def read_attributes_endpoint(
        org_id: str,
        did: str,
        authorization: str | None = Header(default=None),
        x_request_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        if not authorization:
            raise AuthenticationRequiredError("Authorization required")
        return await service.read_attributes(did, org_id, x_request_id)

    @app.post("/api/org/request-access", status_code=status.HTTP_201_CREATED)
    async def request_access_endpoint(body: AccessRequestBody) -> dict[str, Any]:
        request = await service.request_access(body.did, body.org_id, body.attributes)
        return {
            "message": f"Access request for {body.did} has been created",
            "request": request.to_document(),
            "endpoint": "POST /api/did/authorize",
        }

    @app.get("/api/org/{org_id}/requests")
    async def list_requests_endpoint(org_id: str) -> list[dict[str, Any]]:
        return [r.to_document() for r in await service.list_requests(organization_id=org_id)]

    @app.get("/api/org/{org_id}/access-log")
    async def access_log_endpoint(org_id: str, limit: int = 100) -> list[dict[str, Any]]:
        records = await service.list_access_log(organization_id=org_id, limit=limit)
        return [record.to_document() for record in records]

    #endregion

    return app


async def serve(settings: RegistrySettings) -> None:
    """Start the registry server."""
    import uvicorn

    configure_logging(settings)
    service = await RegistryService.from_settings(settings)
    try:
        config = uvicorn.Config(
            create_app(service),
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
        )
        server = uvicorn.Server(config)
        await server.serve()
    finally:
        await service.aclose()


def main() -> None:
    asyncio.run(serve(RegistrySettings()))
