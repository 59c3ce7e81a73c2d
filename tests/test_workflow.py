"""
Tests for the action request workflow.

Demonstrates the governance lifecycle:
1. Staff files a revoke request
2. An admin takes it
3. The admin executes the ledger change and completes it
4. Rejected, released and cancelled paths
"""

import asyncio

import pytest

from certchain.core import RequestEvent, TRANSITIONS
from certchain.core.errors import Conflict, Forbidden, InvalidTransition, NotFound, ValidationError
from certchain.core.workflow import ActionRequestWorkflow, next_status
from certchain.db import InMemoryGovernanceStore
from certchain.schemas import ActionType, Page, RequestStatus


@pytest.fixture
def cert(issue_cert):
    """Issue an active certificate and return its record."""

    async def _cert(student_id="S1"):
        return (await issue_cert(student_id)).record

    return _cert


class InterferingStore(InMemoryGovernanceStore):
    """Runs `interference` once, right before the next compare-and-set lands."""

    def __init__(self):
        super().__init__()
        self.interference = None

    async def _interfere(self):
        if self.interference is not None:
            action, self.interference = self.interference, None
            await action()

    async def transition_request(self, *args, **kwargs):
        await self._interfere()
        return await super().transition_request(*args, **kwargs)

    async def delete_request(self, *args, **kwargs):
        await self._interfere()
        return await super().delete_request(*args, **kwargs)


class TestTransitionTable:

    def test_terminal_states_have_no_edges(self):
        for status, _ in TRANSITIONS:
            assert not status.is_terminal

    def test_cancel_deletes(self):
        assert next_status(RequestStatus.PENDING, RequestEvent.CANCEL) is None

    def test_missing_edge(self):
        with pytest.raises(InvalidTransition, match="Cannot complete a request that is pending"):
            next_status(RequestStatus.PENDING, RequestEvent.COMPLETE)


class TestCreate:

    @pytest.mark.asyncio
    async def test_create_pending(self, workflow, cert, staff, clock):
        record = await cert()
        request = await workflow.create("0x" + record.cert_hash, "revoke", "  Fraudulent transcript ", staff)

        assert request.status == RequestStatus.PENDING
        assert request.cert_hash == record.cert_hash
        assert request.student_id == "S1"
        assert request.action_type == ActionType.REVOKE
        assert request.reason == "Fraudulent transcript"
        assert request.requested_by == staff.address
        assert request.requested_by_name == staff.name
        assert request.taken_by is None
        assert request.requested_at == clock.now

    @pytest.mark.asyncio
    async def test_unknown_certificate(self, workflow, staff):
        with pytest.raises(NotFound):
            await workflow.create("ab" * 32, "revoke", "Fraud", staff)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("cert_hash,action,reason", [
        ("nothex", "revoke", "Fraud"),
        ("ab" * 32, "suspend", "Fraud"),
        ("ab" * 32, "revoke", "   "),
    ])
    async def test_bad_input(self, workflow, staff, cert_hash, action, reason):
        with pytest.raises(ValidationError):
            await workflow.create(cert_hash, action, reason, staff)

    @pytest.mark.asyncio
    async def test_second_open_request_conflicts(self, workflow, cert, staff, other_staff, admin):
        """Any second open request conflicts, whoever files it and whatever it asks."""
        record = await cert()
        first = await workflow.create(record.cert_hash, "revoke", "Fraud", staff)

        with pytest.raises(Conflict):
            await workflow.create(record.cert_hash, "revoke", "Also fraud", other_staff)
        with pytest.raises(Conflict):
            await workflow.create(record.cert_hash, "reactivate", "Mistake", staff)

        await workflow.take(first.id, admin)
        with pytest.raises(Conflict):
            await workflow.create(record.cert_hash, "revoke", "Still fraud", other_staff)

    @pytest.mark.asyncio
    async def test_closed_request_allows_new_one(self, workflow, cert, staff, admin):
        record = await cert()
        first = await workflow.create(record.cert_hash, "revoke", "Fraud", staff)
        await workflow.take(first.id, admin)
        await workflow.reject(first.id, admin, "Insufficient evidence")

        second = await workflow.create(record.cert_hash, "revoke", "New evidence", staff)
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_action_must_match_state(self, workflow, cert, chain, staff, admin):
        record = await cert()
        with pytest.raises(InvalidTransition, match="not revoked"):
            await workflow.create(record.cert_hash, "reactivate", "Mistake", staff)

        await chain.revoke(record.cert_hash, admin)
        with pytest.raises(InvalidTransition, match="already revoked"):
            await workflow.create(record.cert_hash, "revoke", "Fraud", staff)

    @pytest.mark.asyncio
    async def test_store_constraint_backs_the_check(self, store, ledger, cert, staff, clock):
        """Two creates racing past the read both hit the store's uniqueness rule."""
        record = await cert()
        workflow = ActionRequestWorkflow(store, ledger, clock=clock)

        results = await asyncio.gather(
            workflow.create(record.cert_hash, "revoke", "Fraud", staff),
            workflow.create(record.cert_hash, "revoke", "Fraud", staff),
            return_exceptions=True,
        )
        assert sum(isinstance(r, Conflict) for r in results) == 1
        assert await workflow.pending_count() == 1


class TestClaims:

    @pytest.mark.asyncio
    async def test_take_records_claimant(self, workflow, cert, staff, admin, clock):
        request = await workflow.create((await cert()).cert_hash, "revoke", "Fraud", staff)
        clock.advance(minutes=3)

        taken = await workflow.take(request.id, admin)
        assert taken.status == RequestStatus.PROCESSING
        assert taken.taken_by == admin.address
        assert taken.updated_at == clock.now

    @pytest.mark.asyncio
    async def test_staff_cannot_take(self, workflow, cert, staff):
        request = await workflow.create((await cert()).cert_hash, "revoke", "Fraud", staff)
        with pytest.raises(Forbidden):
            await workflow.take(request.id, staff)

    @pytest.mark.asyncio
    async def test_cannot_take_twice(self, workflow, cert, staff, admin, other_admin):
        request = await workflow.create((await cert()).cert_hash, "revoke", "Fraud", staff)
        await workflow.take(request.id, admin)
        with pytest.raises(InvalidTransition):
            await workflow.take(request.id, other_admin)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("event", ["release", "complete", "reject"])
    async def test_only_claimant_may_act(self, workflow, cert, staff, admin, other_admin, event):
        request = await workflow.create((await cert()).cert_hash, "revoke", "Fraud", staff)
        await workflow.take(request.id, admin)

        async def fire(actor):
            if event == "reject":
                return await workflow.reject(request.id, actor, "No")
            return await getattr(workflow, event)(request.id, actor)

        with pytest.raises(Forbidden):
            await fire(other_admin)

        # The rightful claimant succeeds exactly once
        await fire(admin)
        with pytest.raises((InvalidTransition, Forbidden)):
            await fire(admin)

    @pytest.mark.asyncio
    async def test_release_returns_to_pending(self, workflow, cert, staff, admin, other_admin):
        request = await workflow.create((await cert()).cert_hash, "revoke", "Fraud", staff)
        await workflow.take(request.id, admin)

        released = await workflow.release(request.id, admin)
        assert released.status == RequestStatus.PENDING
        assert released.taken_by is None

        retaken = await workflow.take(request.id, other_admin)
        assert retaken.taken_by == other_admin.address

    @pytest.mark.asyncio
    async def test_reject_requires_reason(self, workflow, cert, staff, admin):
        request = await workflow.create((await cert()).cert_hash, "revoke", "Fraud", staff)
        await workflow.take(request.id, admin)
        with pytest.raises(ValidationError):
            await workflow.reject(request.id, admin, " ")

        rejected = await workflow.reject(request.id, admin, "Insufficient evidence")
        assert rejected.status == RequestStatus.REJECTED
        assert rejected.rejection_reason == "Insufficient evidence"

    @pytest.mark.asyncio
    async def test_terminal_states_are_final(self, workflow, cert, staff, admin):
        request = await workflow.create((await cert()).cert_hash, "revoke", "Fraud", staff)
        await workflow.take(request.id, admin)
        await workflow.complete(request.id, admin)

        for action in (workflow.take, workflow.release, workflow.complete):
            with pytest.raises(InvalidTransition):
                await action(request.id, admin)
        with pytest.raises(InvalidTransition):
            await workflow.cancel(request.id, staff)

    @pytest.mark.asyncio
    async def test_unknown_request(self, workflow, admin):
        with pytest.raises(NotFound):
            await workflow.take(999, admin)


class TestCancel:

    @pytest.mark.asyncio
    async def test_requester_cancels_pending(self, workflow, cert, staff):
        request = await workflow.create((await cert()).cert_hash, "revoke", "Fraud", staff)
        await workflow.cancel(request.id, staff)
        with pytest.raises(NotFound):
            await workflow.get(request.id)

    @pytest.mark.asyncio
    async def test_only_requester_cancels(self, workflow, cert, staff, other_staff):
        request = await workflow.create((await cert()).cert_hash, "revoke", "Fraud", staff)
        with pytest.raises(Forbidden):
            await workflow.cancel(request.id, other_staff)

    @pytest.mark.asyncio
    async def test_cannot_cancel_processing(self, workflow, cert, staff, admin):
        request = await workflow.create((await cert()).cert_hash, "revoke", "Fraud", staff)
        await workflow.take(request.id, admin)
        with pytest.raises(InvalidTransition):
            await workflow.cancel(request.id, staff)


class TestLostRaces:

    @pytest.fixture
    def racing(self, ledger, clock):
        store = InterferingStore()
        return store, ActionRequestWorkflow(store, ledger, clock=clock)

    @pytest.mark.asyncio
    async def test_concurrent_take_reports_invalid_transition(self, racing, cert, staff, admin, other_admin):
        store, workflow = racing
        request = await workflow.create((await cert()).cert_hash, "revoke", "Fraud", staff)

        async def rival_takes():
            await workflow.take(request.id, other_admin)

        store.interference = rival_takes
        with pytest.raises(InvalidTransition):
            await workflow.take(request.id, admin)
        assert (await workflow.get(request.id)).taken_by == other_admin.address

    @pytest.mark.asyncio
    async def test_cancel_racing_take(self, racing, cert, staff, admin):
        store, workflow = racing
        request = await workflow.create((await cert()).cert_hash, "revoke", "Fraud", staff)

        async def admin_takes():
            await workflow.take(request.id, admin)

        store.interference = admin_takes
        with pytest.raises(InvalidTransition):
            await workflow.cancel(request.id, staff)
        assert (await workflow.get(request.id)).status == RequestStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_row_that_moves_back_still_lands(self, racing, cert, staff, admin):
        """Release and retake behind our back: status and claimant match, so the CAS lands."""
        store, workflow = racing
        request = await workflow.create((await cert()).cert_hash, "revoke", "Fraud", staff)
        await workflow.take(request.id, admin)

        async def release_and_retake():
            await workflow.release(request.id, admin)
            await workflow.take(request.id, admin)

        store.interference = release_and_retake
        result = await workflow.complete(request.id, admin)
        assert result.status == RequestStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unexplained_miss_is_conflict(self, ledger, clock, cert, staff, admin):
        """The CAS missed but the re-read shows nothing wrong."""

        class MissingStore(InMemoryGovernanceStore):
            async def transition_request(self, *args, **kwargs):
                return None

        workflow = ActionRequestWorkflow(MissingStore(), ledger, clock=clock)
        request = await workflow.create((await cert()).cert_hash, "revoke", "Fraud", staff)
        with pytest.raises(Conflict, match="modified concurrently"):
            await workflow.take(request.id, admin)


class TestExecute:

    @pytest.mark.asyncio
    async def test_execute_revokes_and_completes(self, workflow, chain, cert, staff, admin, ledger):
        record = await cert()
        request = await workflow.create(record.cert_hash, "revoke", "Fraud", staff)
        await workflow.take(request.id, admin)

        result = await workflow.execute(request.id, admin, chain)
        assert result.request.status == RequestStatus.COMPLETED
        assert result.state_change.changed is True
        assert (await ledger.get_record(record.cert_hash)).is_revoked

    @pytest.mark.asyncio
    async def test_execute_reactivates(self, workflow, chain, cert, staff, admin, ledger):
        record = await cert()
        await chain.revoke(record.cert_hash, admin)
        request = await workflow.create(record.cert_hash, "reactivate", "Appeal upheld", staff)
        await workflow.take(request.id, admin)

        await workflow.execute(request.id, admin, chain)
        assert not (await ledger.get_record(record.cert_hash)).is_revoked

    @pytest.mark.asyncio
    async def test_execute_requires_claim(self, workflow, chain, cert, staff, admin, other_admin, ledger):
        record = await cert()
        request = await workflow.create(record.cert_hash, "revoke", "Fraud", staff)

        with pytest.raises(InvalidTransition):
            await workflow.execute(request.id, admin, chain)

        await workflow.take(request.id, admin)
        with pytest.raises(Forbidden):
            await workflow.execute(request.id, other_admin, chain)
        assert not (await ledger.get_record(record.cert_hash)).is_revoked


class TestReads:

    @pytest.mark.asyncio
    async def test_not_completed_count_includes_rejected(self, workflow, cert, staff, admin):
        rejected = await workflow.create((await cert("S1")).cert_hash, "revoke", "Fraud", staff)
        await workflow.take(rejected.id, admin)
        await workflow.reject(rejected.id, admin, "Insufficient evidence")

        completed = await workflow.create((await cert("S2")).cert_hash, "revoke", "Fraud", staff)
        await workflow.take(completed.id, admin)
        await workflow.complete(completed.id, admin)

        await workflow.create((await cert("S3")).cert_hash, "revoke", "Fraud", staff)

        assert await workflow.open_count_for(staff) == 1
        assert await workflow.not_completed_count_for(staff) == 2

    @pytest.mark.asyncio
    async def test_listing_and_counts(self, workflow, cert, staff, other_staff, admin, clock):
        r1 = await workflow.create((await cert("S1")).cert_hash, "revoke", "Fraud", staff)
        clock.advance(seconds=1)
        r2 = await workflow.create((await cert("S2")).cert_hash, "revoke", "Fraud", other_staff)
        clock.advance(seconds=1)
        r3 = await workflow.create((await cert("S3")).cert_hash, "revoke", "Fraud", staff)
        await workflow.take(r1.id, admin)

        assert [r.id for r in await workflow.list()] == [r3.id, r2.id, r1.id]
        assert [r.id for r in await workflow.list(RequestStatus.PENDING)] == [r3.id, r2.id]
        assert await workflow.pending_count() == 2
        assert await workflow.open_count_for(staff) == 2
        assert await workflow.open_count_for(other_staff) == 1

        assert [r.id for r in await workflow.list_mine(staff)] == [r3.id, r1.id]
        assert [r.id for r in await workflow.list_mine(admin)] == [r1.id]
        assert [r.id for r in await workflow.latest(limit=2)] == [r3.id, r2.id]
        assert [r.id for r in await workflow.for_certificate(r2.cert_hash)] == [r2.id]

    @pytest.mark.asyncio
    async def test_paginated_list(self, workflow, cert, staff):
        for n in range(3):
            await workflow.create((await cert(f"S{n}")).cert_hash, "revoke", "Fraud", staff)

        page = await workflow.list(page=1, limit=2)
        assert isinstance(page, Page)
        assert len(page.data) == 2
        assert page.meta.total_count == 3
        assert page.meta.has_more is True

    @pytest.mark.asyncio
    async def test_latest_limit_validated(self, workflow):
        with pytest.raises(ValidationError):
            await workflow.latest(limit=0)


class TestScenario:

    @pytest.mark.asyncio
    async def test_revoked_student_gets_new_version(self, chain, workflow, issue_cert, staff, admin):
        v1 = (await issue_cert("S1")).record
        assert v1.version == 1

        await chain.revoke(v1.cert_hash, admin)
        assert (await chain.verify(v1.cert_hash)).is_revoked

        with pytest.raises(InvalidTransition):
            await workflow.create(v1.cert_hash, "revoke", "Fraud", staff)

        v2 = (await issue_cert("S1", cgpa="3.90")).record
        assert v2.version == 2

        versions = await chain.all_versions("S1")
        assert [r.version for r in versions] == [1, 2]
        assert versions[0].is_revoked and not versions[1].is_revoked
        assert (await chain.active_version("S1")).cert_hash == v2.cert_hash
