"""Relying-party reads of granted attributes."""

from __future__ import annotations

from typing import Any

import structlog

from did_registry.common.exceptions import AccessDeniedError
from did_registry.governance.audit import AccessAuditLog
from did_registry.governance.authorization import AuthorizationRegistry
from did_registry.identity.presentation import attribute_map, disclosed_attributes

logger = structlog.get_logger()


class AccessGateway:
    """
    Serves an organization exactly the attributes its live grant discloses.

    Attributes come from the grant's embedded presentation, never from the
    stored credential. A read is only returned once its audit record is
    written.
    """

    def __init__(self, grants: AuthorizationRegistry, audit: AccessAuditLog) -> None:
        self.grants = grants
        self.audit = audit
        self._logger = logger.bind(component="access_gateway")

    async def read_attributes(
        self,
        subject_did: str,
        organization_id: str,
        request_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Read the attributes a subject has disclosed to an organization.

        Returns:
            ``{"id": subject_did, **disclosed claims}``

        Raises:
            NotAuthorizedError: if no grant exists
            AuthorizationExpiredError: if the grant has lapsed
            ConflictError: if the audit append kept colliding; nothing is returned
        """
        try:
            grant = await self.grants.check_access(subject_did, organization_id)
        except AccessDeniedError as e:
            self._logger.info(
                "attributes_denied",
                subject=subject_did,
                organization=organization_id,
                reason=type(e).__name__,
            )
            raise

        attributes = attribute_map(grant.presentation)
        disclosed = sorted(disclosed_attributes(grant.presentation))

        record = await self.audit.append(subject_did, organization_id, disclosed, request_id)

        self._logger.info(
            "attributes_read",
            subject=subject_did,
            organization=organization_id,
            attributes=disclosed,
            request_id=record.request_id,
        )
        return attributes
