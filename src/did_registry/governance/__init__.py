"""Consent, disclosure and audit."""

from did_registry.governance.authorization import (
    AccessRequest,
    AuthorizationGrant,
    AuthorizationRegistry,
)
from did_registry.governance.audit import AccessAuditLog, AccessAuditRecord
from did_registry.governance.gateway import AccessGateway

__all__ = [
    "AccessRequest",
    "AuthorizationGrant",
    "AuthorizationRegistry",
    "AccessAuditLog",
    "AccessAuditRecord",
    "AccessGateway",
]
