"""Identifier generation and key material for DID subjects."""

from __future__ import annotations

import base64
import re
import secrets
from dataclasses import dataclass, field
from typing import Any

import structlog
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from did_registry.common.exceptions import ConfigurationError, InvalidInputError
from did_registry.common.types import DID

logger = structlog.get_logger()

DID_PATTERN = re.compile(r"^did:([a-z0-9]+):([A-Za-z0-9._%-]+(?::[A-Za-z0-9._%-]+)*)$")
VERIFICATION_KEY_TYPE = "Ed25519VerificationKey2020"
PRIMARY_KEY_FRAGMENT = "key-1"


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def parse_did(did: str) -> tuple[str, str]:
    """
    Split a DID into (method, method-specific id).

    Raises:
        InvalidInputError: if the string is not of the form did:<method>:<id>
    """
    match = DID_PATTERN.match(did or "")
    if not match:
        raise InvalidInputError(
            'Invalid DID format. Must look like "did:<method>:<id>"',
            details={"did": did},
        )
    return match.group(1), match.group(2)


def did_from_verification_method(verification_method: str) -> DID:
    """Return the DID part of a ``did:...#fragment`` reference."""
    return DID(verification_method.split("#", 1)[0])


@dataclass(frozen=True)
class KeyPair:
    """
    Ed25519 key material bound to one DID.

    ``private_key`` is present only on the subject's side; the registry
    works with ``public_view()`` copies.
    """

    controller: DID
    public_key: str  # multibase, base64url ("u" prefix)
    private_key: ed25519.Ed25519PrivateKey | None = field(default=None, repr=False, compare=False)
    key_type: str = VERIFICATION_KEY_TYPE
    fragment: str = PRIMARY_KEY_FRAGMENT

    @property
    def key_id(self) -> str:
        return f"{self.controller}#{self.fragment}"

    @property
    def has_private_key(self) -> bool:
        return self.private_key is not None

    @classmethod
    def generate(cls, controller: DID) -> KeyPair:
        """Generate a fresh Ed25519 key pair for a DID."""
        private_key = ed25519.Ed25519PrivateKey.generate()
        return cls.from_private_key(controller, private_key)

    @classmethod
    def from_private_key(
        cls,
        controller: DID,
        private_key: ed25519.Ed25519PrivateKey,
    ) -> KeyPair:
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return cls(
            controller=controller,
            public_key="u" + b64url_encode(public_bytes),
            private_key=private_key,
        )

    @classmethod
    def from_public(cls, controller: DID, public_key: str) -> KeyPair:
        """
        Public-only key pair from a multibase Ed25519 key.

        Raises:
            InvalidInputError: if the key does not decode to an Ed25519 key
        """
        try:
            if not public_key.startswith("u"):
                raise ValueError("expected base64url multibase prefix 'u'")
            ed25519.Ed25519PublicKey.from_public_bytes(b64url_decode(public_key[1:]))
        except ValueError as e:
            raise InvalidInputError("Malformed public key", details={"did": controller}, cause=e) from e
        return cls(controller=controller, public_key=public_key)

    @classmethod
    def import_private(cls, controller: DID, encoded: str) -> KeyPair:
        """Rebuild a key pair from ``export_private()`` output."""
        try:
            raw = b64url_decode(encoded.removeprefix("u"))
            private_key = ed25519.Ed25519PrivateKey.from_private_bytes(raw)
        except ValueError as e:
            raise InvalidInputError("Malformed private key", cause=e) from e
        return cls.from_private_key(controller, private_key)

    def export_private(self) -> str:
        """Serialize the private half. Subject-side use only."""
        if self.private_key is None:
            raise InvalidInputError("Key pair has no private key", details={"keyId": self.key_id})
        raw = self.private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return "u" + b64url_encode(raw)

    def public_view(self) -> KeyPair:
        """Copy without the private half."""
        return KeyPair(
            controller=self.controller,
            public_key=self.public_key,
            key_type=self.key_type,
            fragment=self.fragment,
        )

    def to_verification_method(self) -> dict[str, Any]:
        """Convert to W3C Verification Method format"""
        return {
            "id": self.key_id,
            "type": self.key_type,
            "controller": self.controller,
            "publicKeyMultibase": self.public_key,
        }


class IdentifierGenerator:
    """
    Mints DIDs and their key material.

    Uniqueness comes from 128 bits of OS randomness; the registry is not
    consulted.
    """

    def __init__(self, method: str = "example") -> None:
        if not re.fullmatch(r"[a-z0-9]+", method):
            raise ConfigurationError(f"Invalid DID method: {method!r}")
        self.method = method

    def mint(self) -> tuple[DID, KeyPair]:
        """
        Mint a new DID and a fresh key pair.

        Returns:
            (did, key pair including the private half)

        Raises:
            ConfigurationError: if no cryptographically secure RNG is available
        """
        try:
            unique_id = secrets.token_hex(16)
            did = DID(f"did:{self.method}:{unique_id}")
            keys = KeyPair.generate(did)
        except (NotImplementedError, OSError) as e:
            logger.critical("secure_rng_unavailable", error=str(e))
            raise ConfigurationError("No secure random source available", cause=e) from e

        logger.debug("did_minted", did=did)
        return did, keys
