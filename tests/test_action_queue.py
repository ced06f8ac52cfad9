"""Tests for the pending-action state machine."""

import asyncio
from datetime import timedelta

import pytest

from shop_agent.errors import ActionNotFound, Expired, InvalidTransition, StorageError
from shop_agent.storage.models import ActionStatus


@pytest.fixture()
def refund_input():
    return {"order_id": "1001", "amount": 25.0}


async def _enqueue(chat_repo, queue, refund_input, requester="admin-1"):
    session = await chat_repo.create_session(requester)
    return await queue.enqueue(session.id, None, requester, "issue_refund", refund_input)


@pytest.mark.asyncio
async def test_enqueue_creates_pending_action(chat_repo, queue, clock, refund_input):
    action = await _enqueue(chat_repo, queue, refund_input)

    assert action.status == ActionStatus.PENDING
    assert action.tool_name == "issue_refund"
    assert action.tool_input == refund_input
    assert action.created_at == clock.now
    assert (action.expires_at - action.created_at).total_seconds() == 3600
    assert action.resolved_at is None


@pytest.mark.asyncio
async def test_approve_sets_approver_and_resolution_time(chat_repo, queue, clock, refund_input):
    action = await _enqueue(chat_repo, queue, refund_input)
    clock.advance(minutes=5)

    approved = await queue.approve(action.id, "admin-7")

    assert approved.status == ActionStatus.APPROVED
    assert approved.approved_by == "admin-7"
    assert approved.resolved_at == clock.now


@pytest.mark.asyncio
async def test_double_approve_keeps_first_approver(chat_repo, queue, refund_input):
    action = await _enqueue(chat_repo, queue, refund_input)
    await queue.approve(action.id, "admin-7")

    with pytest.raises(InvalidTransition) as exc:
        await queue.approve(action.id, "admin-8")

    assert exc.value.current == "approved"
    assert (await queue.get(action.id)).approved_by == "admin-7"


@pytest.mark.asyncio
async def test_concurrent_approvals_only_one_wins(chat_repo, queue, refund_input):
    action = await _enqueue(chat_repo, queue, refund_input)

    results = await asyncio.gather(
        *(queue.approve(action.id, f"admin-{i}") for i in range(5)), return_exceptions=True
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    assert len(winners) == 1
    assert all(isinstance(r, InvalidTransition) for r in results if isinstance(r, Exception))


@pytest.mark.asyncio
async def test_reject(chat_repo, queue, refund_input):
    action = await _enqueue(chat_repo, queue, refund_input)

    rejected = await queue.reject(action.id, "admin-9")

    assert rejected.status == ActionStatus.REJECTED
    assert rejected.rejected_by == "admin-9"
    assert rejected.resolved_at is not None
    with pytest.raises(InvalidTransition):
        await queue.approve(action.id, "admin-7")


@pytest.mark.asyncio
async def test_execute_and_fail_only_from_approved(chat_repo, queue, refund_input):
    action = await _enqueue(chat_repo, queue, refund_input)

    with pytest.raises(InvalidTransition):
        await queue.mark_executed(action.id, {"refund_id": "r1"})
    with pytest.raises(InvalidTransition):
        await queue.mark_failed(action.id, "nope")

    await queue.approve(action.id, "admin-7")
    executed = await queue.mark_executed(action.id, {"refund_id": "r1"})

    assert executed.status == ActionStatus.EXECUTED
    assert executed.result == {"refund_id": "r1"}
    assert executed.approved_by == "admin-7"


@pytest.mark.asyncio
async def test_mark_failed_records_error(chat_repo, queue, refund_input):
    action = await _enqueue(chat_repo, queue, refund_input)
    await queue.approve(action.id, "admin-7")

    failed = await queue.mark_failed(action.id, "payment gateway timeout")

    assert failed.status == ActionStatus.FAILED
    assert failed.error_message == "payment gateway timeout"


@pytest.mark.asyncio
@pytest.mark.parametrize("terminal", ["executed", "failed", "rejected"])
async def test_terminal_states_reject_every_transition(chat_repo, queue, refund_input, terminal):
    action = await _enqueue(chat_repo, queue, refund_input)
    if terminal == "rejected":
        await queue.reject(action.id, "admin-9")
    else:
        await queue.approve(action.id, "admin-7")
        if terminal == "executed":
            await queue.mark_executed(action.id, {})
        else:
            await queue.mark_failed(action.id, "err")
    before = await queue.get(action.id)

    for attempt in (
        queue.approve(action.id, "x"),
        queue.reject(action.id, "x"),
        queue.mark_executed(action.id, {}),
        queue.mark_failed(action.id, "x"),
    ):
        with pytest.raises(InvalidTransition):
            await attempt

    assert await queue.get(action.id) == before


@pytest.mark.asyncio
async def test_approve_after_ttl_is_expired_even_before_sweep(chat_repo, queue, clock, refund_input):
    action = await _enqueue(chat_repo, queue, refund_input)
    clock.advance(hours=1, seconds=1)

    with pytest.raises(Expired):
        await queue.approve(action.id, "admin-7")
    with pytest.raises(Expired):
        await queue.reject(action.id, "admin-7")

    assert (await queue.get(action.id)).status == ActionStatus.PENDING


@pytest.mark.asyncio
async def test_approve_exactly_at_expiry_is_expired(chat_repo, queue, clock, refund_input):
    action = await _enqueue(chat_repo, queue, refund_input)
    clock.now = action.expires_at

    with pytest.raises(Expired):
        await queue.approve(action.id, "admin-7")


@pytest.mark.asyncio
async def test_sweep_is_idempotent(chat_repo, queue, clock, refund_input):
    stale = await _enqueue(chat_repo, queue, refund_input)
    resolved = await _enqueue(chat_repo, queue, refund_input)
    await queue.reject(resolved.id, "admin-9")
    clock.advance(minutes=30)
    fresh = await _enqueue(chat_repo, queue, refund_input)
    clock.advance(minutes=31)

    assert await queue.sweep_expired(clock.now) == 1
    assert await queue.sweep_expired(clock.now) == 0

    assert (await queue.get(stale.id)).status == ActionStatus.EXPIRED
    assert (await queue.get(stale.id)).resolved_at == clock.now
    assert (await queue.get(resolved.id)).status == ActionStatus.REJECTED
    assert (await queue.get(fresh.id)).status == ActionStatus.PENDING


@pytest.mark.asyncio
async def test_approve_after_sweep_is_invalid_transition(chat_repo, queue, clock, refund_input):
    action = await _enqueue(chat_repo, queue, refund_input)
    clock.advance(hours=2)
    await queue.sweep_expired(clock.now)

    with pytest.raises(InvalidTransition):
        await queue.approve(action.id, "admin-7")


@pytest.mark.asyncio
async def test_unknown_action(queue):
    with pytest.raises(ActionNotFound):
        await queue.approve("missing", "admin-7")
    with pytest.raises(ActionNotFound):
        await queue.mark_executed("missing", {})
    assert await queue.get("missing") is None


@pytest.mark.asyncio
async def test_attach_external_ref(chat_repo, queue, refund_input):
    action = await _enqueue(chat_repo, queue, refund_input)

    await queue.attach_external_ref(action.id, "ext-42")
    again = await queue.attach_external_ref(action.id, "ext-42")

    assert again.external_ref == "ext-42"
    assert (await queue.get_by_external_ref("ext-42")).id == action.id
    with pytest.raises(InvalidTransition):
        await queue.attach_external_ref(action.id, "ext-43")


@pytest.mark.asyncio
async def test_attach_external_ref_only_while_pending(chat_repo, queue, refund_input):
    action = await _enqueue(chat_repo, queue, refund_input)
    await queue.reject(action.id, "admin-9")

    with pytest.raises(InvalidTransition):
        await queue.attach_external_ref(action.id, "ext-42")


@pytest.mark.asyncio
async def test_external_refs_are_unique(chat_repo, queue, refund_input):
    first = await _enqueue(chat_repo, queue, refund_input)
    second = await _enqueue(chat_repo, queue, refund_input)
    await queue.attach_external_ref(first.id, "ext-42")

    with pytest.raises(StorageError):
        await queue.attach_external_ref(second.id, "ext-42")
    assert (await queue.get(second.id)).external_ref is None


@pytest.mark.asyncio
async def test_queries(chat_repo, queue, refund_input):
    a = await _enqueue(chat_repo, queue, refund_input, requester="admin-1")
    b = await _enqueue(chat_repo, queue, refund_input, requester="admin-1")
    await _enqueue(chat_repo, queue, refund_input, requester="admin-2")
    await queue.reject(b.id, "admin-9")

    pending = await queue.list_pending_for_requester("admin-1")
    assert [p.id for p in pending] == [a.id]
    assert [p.id for p in await queue.list_for_session(a.session_id)] == [a.id]


@pytest.mark.asyncio
async def test_session_delete_cascades_to_actions(chat_repo, queue, refund_input):
    action = await _enqueue(chat_repo, queue, refund_input)

    assert await chat_repo.delete_session(action.session_id)

    assert await queue.get(action.id) is None


@pytest.mark.asyncio
@pytest.mark.parametrize("sweep_first", [False, True])
async def test_sweep_racing_approve_resolves_once(chat_repo, queue, clock, refund_input, sweep_first):
    action = await _enqueue(chat_repo, queue, refund_input)
    # approvals read the queue clock (still inside the TTL); the sweep is told it is later
    late = clock.now + timedelta(hours=2)
    calls = [queue.approve(action.id, "admin-7"), queue.sweep_expired(late)]
    if sweep_first:
        calls.reverse()

    results = await asyncio.gather(*calls, return_exceptions=True)
    approved, swept = results[::-1] if sweep_first else results

    stored = await queue.get(action.id)
    if stored.status == ActionStatus.APPROVED:
        assert swept == 0
        assert approved.approved_by == "admin-7"
    else:
        assert stored.status == ActionStatus.EXPIRED
        assert swept == 1
        assert isinstance(approved, InvalidTransition)
        assert stored.approved_by is None


def test_terminal_statuses():
    assert not ActionStatus.PENDING.is_terminal
    assert not ActionStatus.APPROVED.is_terminal
    for status in ("executed", "failed", "rejected", "expired"):
        assert ActionStatus(status).is_terminal


@pytest.mark.asyncio
async def test_expiry_check_matches_decision_boundary(chat_repo, queue, clock, refund_input):
    action = await _enqueue(chat_repo, queue, refund_input)

    assert not action.is_expired_at(action.expires_at - timedelta(seconds=1))
    assert action.is_expired_at(action.expires_at)
