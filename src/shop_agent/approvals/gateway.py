"""Bridge between the action queue and the human approval channel."""

from __future__ import annotations

from typing import Awaitable, Callable, Iterable, Optional

from structlog.contextvars import bound_contextvars

from shop_agent.approvals.cards import approval_card, expired_card, outcome_card
from shop_agent.approvals.channel import Decision, NotificationChannel
from shop_agent.approvals.queue import ActionQueue
from shop_agent.errors import Expired, InvalidTransition, NotificationError, UnknownReference
from shop_agent.log import get_logger
from shop_agent.storage.models import PendingAction

logger = get_logger(__name__)

ResolutionListener = Callable[[PendingAction], Awaitable[object]]


class ApprovalGateway:
    """Posts approval cards and applies the decisions that come back.

    The channel's decision callback is wired to :meth:`on_decision`. Once a
    decision has moved an action out of ``pending``, the registered
    resolution listener is told so the conversation can continue.
    """

    def __init__(self, queue: ActionQueue, channel: NotificationChannel):
        self._queue = queue
        self._channel = channel
        self._listener: ResolutionListener | None = None
        channel.on_decision(self.on_decision)

    def on_resolution(self, listener: ResolutionListener) -> None:
        self._listener = listener

    async def request_approval(
        self, action: PendingAction, requester_name: str, domain: Optional[str] = None
    ) -> str:
        """Post the approval card for *action* and return the channel reference."""
        card = approval_card(action, requester_name, domain)
        ref = await self._channel.post_card(card)
        logger.info("approval_requested", action_id=action.id, external_ref=ref, tool=action.tool_name)
        return ref

    async def on_decision(
        self, external_ref: str, decision: Decision, actor: str
    ) -> PendingAction | None:
        """Apply a human decision. Returns None when it was a duplicate."""
        with bound_contextvars(external_ref=external_ref, actor=actor):
            action = await self._queue.get_by_external_ref(external_ref)
            if action is None:
                logger.warning("decision_unknown_reference", decision=str(decision))
                raise UnknownReference(external_ref)
            if action.status.is_terminal:
                logger.info("duplicate_decision_ignored", action_id=action.id, status=str(action.status))
                return None

            try:
                if decision == Decision.APPROVE:
                    resolved = await self._queue.approve(action.id, actor)
                else:
                    resolved = await self._queue.reject(action.id, actor)
            except InvalidTransition as e:
                logger.info("duplicate_decision_ignored", action_id=action.id, status=e.current)
                return None
            except Expired:
                logger.info("decision_after_expiry", action_id=action.id)
                await self._update(external_ref, expired_card(action))
                raise

            await self.notify_outcome(resolved)
            if self._listener is not None:
                try:
                    await self._listener(resolved)
                except Exception:
                    # The decision itself is committed; the listener reports its own failures.
                    logger.exception("resolution_listener_failed", action_id=resolved.id)
            return resolved

    async def notify_outcome(self, action: PendingAction) -> None:
        """Replace the posted card with one reflecting the action's current status."""
        if not action.external_ref:
            return
        card = outcome_card(action)
        if card is not None:
            await self._update(action.external_ref, card)

    async def notify_expired(self, actions: Iterable[PendingAction]) -> None:
        for action in actions:
            await self.notify_outcome(action)

    async def _update(self, external_ref: str, card) -> None:
        try:
            await self._channel.update_card(external_ref, card)
        except NotificationError as e:
            logger.warning("card_update_failed", external_ref=external_ref, error=str(e))
