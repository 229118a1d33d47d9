"""Shared helpers for registry tests."""

from datetime import UTC, datetime, timedelta

import pytest

from did_registry.common.types import DID
from did_registry.identity.identifiers import KeyPair
from did_registry.service import RegistryService, RegistryStores

T0 = datetime(2026, 1, 15, 9, 30, tzinfo=UTC)
SUBJECT = DID("did:example:abc123")
ISSUER = DID("did:example:government")


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


async def started_service(clock: FrozenClock | None = None) -> RegistryService:
    service = RegistryService(
        RegistryStores.in_memory(),
        KeyPair.generate(ISSUER),
        clock=clock or FrozenClock(),
    )
    await service.start()
    return service


async def register_ana(service: RegistryService) -> KeyPair:
    """Register did:example:abc123 with {name: Ana, age: 30}; returns the subject's keys."""
    keys = KeyPair.generate(SUBJECT)
    await service.register_subject({"name": "Ana", "age": 30}, keys.public_view())
    return keys


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()
