"""Tests for grants, attribute reads and the access audit trail."""

import asyncio
from datetime import timedelta

import pytest

from conftest import ISSUER, SUBJECT, T0, FrozenClock, register_ana, started_service
from did_registry.common.exceptions import (
    AuthorizationExpiredError,
    ConflictError,
    GrantNotFoundError,
    InvalidInputError,
    NotAuthorizedError,
    NotFoundError,
    ProofInvalidError,
    StoreUnavailableError,
    UnknownAttributeError,
)
from did_registry.common.types import AccessRequestStatus, GrantState
from did_registry.governance.audit import APPEND_ATTEMPTS, AccessAuditLog
from did_registry.governance.authorization import REQUEST_PREFIX
from did_registry.identity.identifiers import KeyPair
from did_registry.identity.presentation import disclosed_attributes
from did_registry.service import RegistryService, RegistryStores
from did_registry.store.backend import InMemoryDocumentStore


@pytest.mark.asyncio
class TestAuthorizationRegistry:
    """Test the grant lifecycle."""

    async def test_minimization(self, clock):
        """Test the presentation discloses exactly the approved attributes."""
        service = await started_service(clock)
        keys = await register_ana(service)

        grant = await service.authorize(SUBJECT, "OrgX", ["name"], keys)

        assert grant.attributes == ["name"]
        assert disclosed_attributes(grant.presentation) == set(grant.attributes)
        assert grant.presentation.verifiable_credential[0]["credentialSubject"] == {"id": SUBJECT, "name": "Ana"}
        assert grant.issued_at == T0
        assert grant.expires_at == T0 + timedelta(hours=24)

    async def test_unknown_attribute_lists_valid_ones(self, clock):
        """Test requesting salary fails naming the valid attributes."""
        service = await started_service(clock)
        keys = await register_ana(service)

        with pytest.raises(UnknownAttributeError) as exc_info:
            await service.authorize(SUBJECT, "OrgX", ["name", "salary"], keys)

        assert exc_info.value.attribute == "salary"
        assert exc_info.value.valid_attributes == ["name", "age"]
        assert exc_info.value.details["validAttributes"] == ["name", "age"]
        assert await service.grants.state(SUBJECT, "OrgX") == GrantState.ABSENT

    async def test_id_is_not_an_attribute(self, clock):
        """Test the subject id cannot be requested as a claim."""
        service = await started_service(clock)
        keys = await register_ana(service)

        with pytest.raises(UnknownAttributeError):
            await service.authorize(SUBJECT, "OrgX", ["id"], keys)

    @pytest.mark.parametrize("attributes", [[], "name", [""], [3]])
    async def test_malformed_attributes(self, clock, attributes):
        """Test attribute lists must be non-empty lists of names."""
        service = await started_service(clock)
        keys = await register_ana(service)

        with pytest.raises(InvalidInputError):
            await service.authorize(SUBJECT, "OrgX", attributes, keys)

    async def test_no_credential(self, clock):
        """Test authorizing for a subject without a credential is not found."""
        service = await started_service(clock)
        keys = KeyPair.generate(SUBJECT)

        with pytest.raises(NotFoundError):
            await service.authorize(SUBJECT, "OrgX", ["name"], keys)

    async def test_foreign_holder_key_rejected(self, clock):
        """Test a key that is not the subject's registered key cannot authorize."""
        service = await started_service(clock)
        await register_ana(service)

        with pytest.raises(ProofInvalidError):
            await service.authorize(SUBJECT, "OrgX", ["name"], KeyPair.generate(SUBJECT))

    async def test_reauthorize_replaces(self, clock):
        """Test authorizing twice leaves exactly one grant with the latest expiry."""
        service = await started_service(clock)
        keys = await register_ana(service)

        await service.authorize(SUBJECT, "OrgX", ["name"], keys)
        clock.advance(timedelta(hours=2))
        second = await service.authorize(SUBJECT, "OrgX", ["name"], keys)

        grants = await service.list_grants(subject_did=SUBJECT)
        assert len(grants) == 1
        assert grants[0].expires_at == second.expires_at == T0 + timedelta(hours=26)

    async def test_reauthorize_changes_attributes(self, clock):
        """Test re-authorizing replaces the attribute set."""
        service = await started_service(clock)
        keys = await register_ana(service)

        await service.authorize(SUBJECT, "OrgX", ["name", "age"], keys)
        await service.authorize(SUBJECT, "OrgX", ["age"], keys)

        assert await service.read_attributes(SUBJECT, "OrgX") == {"id": SUBJECT, "age": 30}

    async def test_expiry_boundary(self, clock):
        """Test reads succeed up to expiresAt and fail strictly after."""
        service = await started_service(clock)
        keys = await register_ana(service)
        await service.authorize(SUBJECT, "OrgX", ["name"], keys)

        clock.advance(timedelta(hours=24))
        assert (await service.read_attributes(SUBJECT, "OrgX"))["name"] == "Ana"

        clock.advance(timedelta(milliseconds=1))
        with pytest.raises(AuthorizationExpiredError):
            await service.read_attributes(SUBJECT, "OrgX")
        assert await service.grants.state(SUBJECT, "OrgX") == GrantState.EXPIRED

        clock.advance(timedelta(days=30))
        with pytest.raises(AuthorizationExpiredError):
            await service.read_attributes(SUBJECT, "OrgX")

    async def test_expiry_boundary_below_a_millisecond(self):
        """Test a read at the returned expiresAt succeeds when the clock carries microseconds."""
        clock = FrozenClock(T0 + timedelta(microseconds=500))
        service = await started_service(clock)
        keys = await register_ana(service)
        grant = await service.authorize(SUBJECT, "OrgX", ["name"], keys)

        assert (await service.get_grant(SUBJECT, "OrgX")).expires_at == grant.expires_at

        clock.now = grant.expires_at
        assert await service.read_attributes(SUBJECT, "OrgX") == {"id": SUBJECT, "name": "Ana"}

        clock.advance(timedelta(milliseconds=1))
        with pytest.raises(AuthorizationExpiredError):
            await service.read_attributes(SUBJECT, "OrgX")

    async def test_revocation_is_final(self, clock):
        """Test reads after revoke are NotAuthorized, not expired."""
        service = await started_service(clock)
        keys = await register_ana(service)
        await service.authorize(SUBJECT, "OrgX", ["name"], keys)

        await service.revoke(SUBJECT, "OrgX")

        with pytest.raises(NotAuthorizedError):
            await service.read_attributes(SUBJECT, "OrgX")
        clock.advance(timedelta(days=2))
        with pytest.raises(NotAuthorizedError):
            await service.read_attributes(SUBJECT, "OrgX")

    async def test_revoke_missing(self, clock):
        """Test revoking a grant that does not exist."""
        service = await started_service(clock)

        with pytest.raises(GrantNotFoundError):
            await service.revoke(SUBJECT, "OrgX")

    async def test_get_grant(self, clock):
        """Test get_grant returns expired grants and raises for absent ones."""
        service = await started_service(clock)
        keys = await register_ana(service)
        await service.authorize(SUBJECT, "OrgX", ["name"], keys)
        clock.advance(timedelta(days=2))

        grant = await service.get_grant(SUBJECT, "OrgX")
        assert grant.is_expired(clock())

        with pytest.raises(GrantNotFoundError):
            await service.get_grant(SUBJECT, "OrgY")

    async def test_grants_are_per_organization(self, clock):
        """Test each organization sees only its own grant."""
        service = await started_service(clock)
        keys = await register_ana(service)
        await service.authorize(SUBJECT, "OrgX", ["name"], keys)
        await service.authorize(SUBJECT, "BankMSP", ["age"], keys)

        assert await service.read_attributes(SUBJECT, "OrgX") == {"id": SUBJECT, "name": "Ana"}
        assert await service.read_attributes(SUBJECT, "BankMSP") == {"id": SUBJECT, "age": 30}
        assert [g.organization for g in await service.list_grants(organization_id="OrgX")] == ["OrgX"]

    async def test_invalid_organization(self, clock):
        """Test organization ids must be simple names."""
        service = await started_service(clock)
        keys = await register_ana(service)

        with pytest.raises(InvalidInputError):
            await service.authorize(SUBJECT, "", ["name"], keys)
        with pytest.raises(InvalidInputError):
            await service.authorize(SUBJECT, "Org X", ["name"], keys)


@pytest.mark.asyncio
class TestAccessRequests:
    """Test organization access requests."""

    async def test_request_then_authorize_approves(self, clock):
        """Test a pending request becomes approved once the subject authorizes."""
        service = await started_service(clock)
        keys = await register_ana(service)

        request = await service.request_access(SUBJECT, "BankMSP", ["name", "age"])
        assert request.status == AccessRequestStatus.PENDING
        assert await service.list_requests(organization_id="BankMSP") == [request]

        clock.advance(timedelta(minutes=10))
        await service.authorize(SUBJECT, "BankMSP", ["name", "age"], keys)

        (approved,) = await service.list_requests(organization_id="BankMSP")
        assert approved.id == request.id
        assert approved.status == AccessRequestStatus.APPROVED
        assert approved.approved_at == T0 + timedelta(minutes=10)
        assert await service.list_requests(status=AccessRequestStatus.PENDING) == []

    async def test_partial_grant_leaves_request_pending(self, clock):
        """Test a grant covering fewer attributes than requested does not approve the request."""
        service = await started_service(clock)
        keys = await register_ana(service)
        request = await service.request_access(SUBJECT, "BankMSP", ["name", "age"])

        await service.authorize(SUBJECT, "BankMSP", ["name"], keys)
        assert [r.status for r in await service.list_requests()] == [AccessRequestStatus.PENDING]

        await service.authorize(SUBJECT, "BankMSP", ["age", "name"], keys)
        (approved,) = await service.list_requests()
        assert approved.id == request.id
        assert approved.status == AccessRequestStatus.APPROVED

    async def test_failed_approval_keeps_grant(self, clock):
        """Test authorize succeeds when approving requests fails after the grant is stored."""

        class RequestUpdatesFail(InMemoryDocumentStore):
            async def put(self, key, body, revision=None):
                if key.startswith(REQUEST_PREFIX) and revision is not None:
                    raise StoreUnavailableError("authorization store down")
                return await super().put(key, body, revision)

        stores = RegistryStores(
            dids=InMemoryDocumentStore("did_db"),
            credentials=InMemoryDocumentStore("credential_db"),
            grants=RequestUpdatesFail("authorization_db"),
            audit=InMemoryDocumentStore("access_log_db"),
        )
        service = RegistryService(stores, KeyPair.generate(ISSUER), clock=clock)
        await service.start()
        keys = await register_ana(service)
        await service.request_access(SUBJECT, "BankMSP", ["name"])

        grant = await service.authorize(SUBJECT, "BankMSP", ["name"], keys)

        stored = await service.get_grant(SUBJECT, "BankMSP")
        assert stored.expires_at == grant.expires_at
        assert stored.attributes == ["name"]
        assert await service.read_attributes(SUBJECT, "BankMSP") == {"id": SUBJECT, "name": "Ana"}
        assert [r.status for r in await service.list_requests()] == [AccessRequestStatus.PENDING]

    async def test_request_unknown_subject(self, clock):
        """Test requests for unregistered DIDs are not found."""
        service = await started_service(clock)

        with pytest.raises(NotFoundError):
            await service.request_access("did:example:nobody", "BankMSP", ["name"])

    async def test_request_grants_nothing(self, clock):
        """Test a pending request does not allow reads."""
        service = await started_service(clock)
        await register_ana(service)
        await service.request_access(SUBJECT, "BankMSP", ["name"])

        with pytest.raises(NotAuthorizedError):
            await service.read_attributes(SUBJECT, "BankMSP")


@pytest.mark.asyncio
class TestAccessGateway:
    """Test audited attribute reads."""

    async def test_scenario_read_and_revoke(self, clock):
        """Test Ana shares her name with OrgX, then revokes."""
        service = await started_service(clock)
        keys = await register_ana(service)
        await service.authorize(SUBJECT, "OrgX", ["name"], keys)

        attributes = await service.read_attributes(SUBJECT, "OrgX")

        assert attributes == {"id": SUBJECT, "name": "Ana"}
        assert "age" not in attributes

        await service.revoke(SUBJECT, "OrgX")
        with pytest.raises(NotAuthorizedError):
            await service.read_attributes(SUBJECT, "OrgX")

    async def test_reads_use_presentation_not_credential(self, clock):
        """Test a reissued credential does not widen or change an existing grant."""
        service = await started_service(clock)
        keys = await register_ana(service)
        await service.authorize(SUBJECT, "OrgX", ["name"], keys)

        await service.issue_credential(SUBJECT, {"name": "Ana Maria", "age": 30, "city": "Lima"})

        assert await service.read_attributes(SUBJECT, "OrgX") == {"id": SUBJECT, "name": "Ana"}

    async def test_reads_are_audited(self, clock):
        """Test each successful read appends one record; denials append none."""
        service = await started_service(clock)
        keys = await register_ana(service)
        await service.authorize(SUBJECT, "OrgX", ["name"], keys)

        await service.read_attributes(SUBJECT, "OrgX", request_id="req-1")
        await service.read_attributes(SUBJECT, "OrgX")
        with pytest.raises(NotAuthorizedError):
            await service.read_attributes(SUBJECT, "OrgY")

        records = await service.list_access_log(organization_id="OrgX")
        assert len(records) == 2
        assert records[1].request_id == "req-1"
        assert records[0].request_id != "req-1"
        assert all(r.attributes == ["name"] and r.subject == SUBJECT for r in records)
        assert await service.list_access_log(organization_id="OrgY") == []
        assert await service.audit.verify_chain() == (True, None)

    async def test_concurrent_reads_by_different_organizations(self, clock):
        """Test simultaneous audited reads for unrelated pairs both succeed and stay chained."""

        class YieldingStore(InMemoryDocumentStore):
            async def last(self, prefix=""):
                doc = await super().last(prefix)
                await asyncio.sleep(0)
                return doc

        service = await started_service(clock)
        keys = await register_ana(service)
        await service.authorize(SUBJECT, "OrgX", ["name"], keys)
        await service.authorize(SUBJECT, "OrgY", ["age"], keys)
        service.audit.store = YieldingStore()

        x, y = await asyncio.gather(
            service.read_attributes(SUBJECT, "OrgX"),
            service.read_attributes(SUBJECT, "OrgY"),
        )

        assert x == {"id": SUBJECT, "name": "Ana"}
        assert y == {"id": SUBJECT, "age": 30}
        records = await service.audit.records()
        assert [r.sequence for r in records] == [1, 2]
        assert {r.organization for r in records} == {"OrgX", "OrgY"}
        assert await service.audit.verify_chain() == (True, None)

    async def test_audit_failure_blocks_disclosure(self, clock):
        """Test a failed audit write fails the read."""
        service = await started_service(clock)
        keys = await register_ana(service)
        await service.authorize(SUBJECT, "OrgX", ["name"], keys)

        class BrokenStore(InMemoryDocumentStore):
            async def put(self, key, body, revision=None):
                raise StoreUnavailableError("audit store down")

        service.audit.store = BrokenStore()

        with pytest.raises(StoreUnavailableError):
            await service.read_attributes(SUBJECT, "OrgX")


@pytest.mark.asyncio
class TestAccessAuditLog:
    """Test the hash-chained audit log."""

    async def test_chain_links_records(self):
        """Test each record points at its predecessor's hash."""
        audit = AccessAuditLog(InMemoryDocumentStore(), FrozenClock())

        first = await audit.append(SUBJECT, "OrgX", ["name"])
        second = await audit.append(SUBJECT, "OrgX", ["age", "name"], request_id="req-2")

        assert first.previous_hash is None
        assert second.previous_hash == first.record_hash
        assert second.sequence == 2
        assert await audit.verify_chain() == (True, None)

    async def test_tampering_detected(self):
        """Test editing a stored record breaks the chain."""
        store = InMemoryDocumentStore()
        audit = AccessAuditLog(store, FrozenClock())
        await audit.append(SUBJECT, "OrgX", ["name"], request_id="req-1")
        record = await audit.append(SUBJECT, "OrgX", ["name"], request_id="req-2")

        stored = await store.get(record.key)
        await store.put(record.key, {**stored.body, "attributes": ["age", "name"]}, revision=stored.revision)

        assert await audit.verify_chain() == (False, "req-2")

    async def test_sequence_collision_conflicts(self):
        """Test two appends racing for the same slot conflict."""
        store = InMemoryDocumentStore()
        audit = AccessAuditLog(store, FrozenClock())
        record = await audit.append(SUBJECT, "OrgX", ["name"])

        with pytest.raises(ConflictError):
            await store.put(record.key, record.to_document())

    async def test_append_gives_up_after_repeated_collisions(self):
        """Test an append that always loses the race surfaces ConflictError."""

        class AlwaysTaken(InMemoryDocumentStore):
            attempts = 0

            async def put(self, key, body, revision=None):
                self.attempts += 1
                raise ConflictError(f"Document update conflict on {key}")

        store = AlwaysTaken()
        audit = AccessAuditLog(store, FrozenClock())

        with pytest.raises(ConflictError):
            await audit.append(SUBJECT, "OrgX", ["name"])

        assert store.attempts == APPEND_ATTEMPTS

    async def test_query_filters_and_orders(self):
        """Test queries filter by time and return newest first."""
        clock = FrozenClock()
        audit = AccessAuditLog(InMemoryDocumentStore(), clock)
        for org in ["OrgX", "OrgY", "OrgX"]:
            await audit.append(SUBJECT, org, ["name"])
            clock.advance(timedelta(hours=1))

        latest = await audit.query(organization_id="OrgX")
        assert [r.sequence for r in latest] == [3, 1]

        recent = await audit.query(start_time=T0 + timedelta(minutes=30))
        assert [r.sequence for r in recent] == [3, 2]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
