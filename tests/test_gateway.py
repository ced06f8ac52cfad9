"""Tests for the approval gateway and the in-memory channel."""

import pytest

from shop_agent.approvals.channel import Decision
from shop_agent.errors import Expired, NotificationError, UnknownReference
from shop_agent.storage.models import ActionStatus


async def _posted_action(chat_repo, queue, gateway):
    session = await chat_repo.create_session("admin-1")
    action = await queue.enqueue(
        session.id, None, "admin-1", "issue_refund", {"order_id": "1001", "amount": 25.0}
    )
    ref = await gateway.request_approval(action, "Alice", domain="orders")
    return await queue.attach_external_ref(action.id, ref)


@pytest.mark.asyncio
async def test_request_approval_posts_actionable_card(chat_repo, queue, gateway, channel):
    action = await _posted_action(chat_repo, queue, gateway)

    assert action.external_ref == "ext-42"
    card = channel.cards["ext-42"]
    assert card.title == "📦 AI Action Request"
    assert card.actions is True
    assert '"order_id": "1001"' in card.block
    assert "Requested by Alice" in card.context


@pytest.mark.asyncio
async def test_approve_through_channel(chat_repo, queue, gateway, channel):
    action = await _posted_action(chat_repo, queue, gateway)
    resolved = []

    async def listener(a):
        resolved.append(a)

    gateway.on_resolution(listener)

    await channel.deliver_decision("ext-42", Decision.APPROVE, "admin-7")

    stored = await queue.get(action.id)
    assert stored.status == ActionStatus.APPROVED
    assert stored.approved_by == "admin-7"
    assert [a.id for a in resolved] == [action.id]
    assert channel.cards["ext-42"].title == "✅ Action Approved"
    assert channel.cards["ext-42"].actions is False


@pytest.mark.asyncio
async def test_reject_updates_card(chat_repo, queue, gateway, channel):
    action = await _posted_action(chat_repo, queue, gateway)

    resolved = await gateway.on_decision("ext-42", Decision.REJECT, "admin-9")

    assert resolved.status == ActionStatus.REJECTED
    assert channel.cards["ext-42"].title == "❌ Action Rejected"
    assert "admin-9" in channel.cards["ext-42"].context
    assert (await queue.get(action.id)).rejected_by == "admin-9"


@pytest.mark.asyncio
async def test_duplicate_decision_is_ignored(chat_repo, queue, gateway):
    action = await _posted_action(chat_repo, queue, gateway)
    calls = []

    async def listener(a):
        calls.append(a.id)

    gateway.on_resolution(listener)

    assert await gateway.on_decision("ext-42", Decision.APPROVE, "admin-7") is not None
    assert await gateway.on_decision("ext-42", Decision.REJECT, "admin-8") is None

    stored = await queue.get(action.id)
    assert stored.status == ActionStatus.APPROVED
    assert stored.rejected_by is None
    assert calls == [action.id]


@pytest.mark.asyncio
async def test_unknown_reference(gateway):
    with pytest.raises(UnknownReference):
        await gateway.on_decision("ext-404", Decision.APPROVE, "admin-7")


@pytest.mark.asyncio
async def test_decision_after_ttl_marks_card_expired(chat_repo, queue, gateway, channel, clock):
    action = await _posted_action(chat_repo, queue, gateway)
    clock.advance(hours=2)

    with pytest.raises(Expired):
        await gateway.on_decision("ext-42", Decision.APPROVE, "admin-7")

    assert channel.cards["ext-42"].title == "⏰ Action Expired"
    assert (await queue.get(action.id)).approved_by is None


@pytest.mark.asyncio
async def test_listener_failure_does_not_undo_decision(chat_repo, queue, gateway):
    action = await _posted_action(chat_repo, queue, gateway)

    async def broken(_):
        raise RuntimeError("listener blew up")

    gateway.on_resolution(broken)

    resolved = await gateway.on_decision("ext-42", Decision.APPROVE, "admin-7")

    assert resolved.status == ActionStatus.APPROVED
    assert (await queue.get(action.id)).status == ActionStatus.APPROVED


@pytest.mark.asyncio
async def test_notify_expired_updates_each_card(chat_repo, queue, gateway, channel, clock):
    await _posted_action(chat_repo, queue, gateway)
    clock.advance(hours=2)

    expired = await queue.expire_stale()
    await gateway.notify_expired(expired)

    assert channel.cards["ext-42"].title == "⏰ Action Expired"


@pytest.mark.asyncio
async def test_log_channel_rejects_reused_and_unknown_refs():
    from shop_agent.approvals.cards import Card
    from shop_agent.approvals.channel import LogChannel

    channel = LogChannel(ref_factory=lambda: "same")
    card = Card(title="t", tool_name="get_orders")
    await channel.post_card(card)

    with pytest.raises(NotificationError):
        await channel.post_card(card)
    with pytest.raises(NotificationError):
        await channel.update_card("other", card)


@pytest.mark.asyncio
async def test_decision_without_handler_is_dropped():
    from shop_agent.approvals.channel import LogChannel

    channel = LogChannel()
    await channel.deliver_decision("ext-1", Decision.APPROVE, "admin-7")


@pytest.mark.asyncio
async def test_decision_on_finished_action_is_ignored(chat_repo, queue, gateway, channel):
    action = await _posted_action(chat_repo, queue, gateway)
    await gateway.on_decision("ext-42", Decision.REJECT, "admin-9")
    rejected_card = channel.cards["ext-42"]

    assert await gateway.on_decision("ext-42", Decision.APPROVE, "admin-7") is None

    stored = await queue.get(action.id)
    assert stored.status == ActionStatus.REJECTED
    assert stored.approved_by is None
    assert channel.cards["ext-42"] is rejected_card
