"""
DID Registry

Decentralized identifiers, verifiable credentials and consent-based
selective disclosure of credentialed attributes.
"""

__version__ = "0.1.0"

from did_registry.config import RegistrySettings
from did_registry.service import Registration, RegistryService, RegistryStores

__all__ = [
    "RegistrySettings",
    "Registration",
    "RegistryService",
    "RegistryStores",
]
