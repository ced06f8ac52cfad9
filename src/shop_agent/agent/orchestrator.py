"""Chat orchestrator: drives one conversation turn through the model and tools.

A turn ends in one of three ways: the model answers in text, a mutating tool
call is queued for human approval, or the turn fails with a message saying
why. Queued turns are not awaited in-process. :meth:`resume_after_decision`
picks the conversation up again from stored state once the action has been
approved, rejected or has expired.
"""

from __future__ import annotations

import asyncio
import json
import time
import weakref
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Awaitable, Callable, Optional

from structlog.contextvars import bound_contextvars
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_fixed

from shop_agent.agent.client import Completion, CompletionClient, ToolUse
from shop_agent.agent.conversation import build_messages, generate_title, unresolved_tool_uses
from shop_agent.agent.tools.registry import ToolRegistry
from shop_agent.approvals.gateway import ApprovalGateway
from shop_agent.approvals.queue import ActionQueue
from shop_agent.config import OrchestratorConfig
from shop_agent.errors import (
    CompletionError,
    EmbeddingError,
    InvalidTransition,
    SessionNotFound,
    ShopAgentError,
    StorageError,
    ToolLoopExceeded,
    TransientCompletionError,
)
from shop_agent.log import get_logger
from shop_agent.routing.classifier import DomainClassifier
from shop_agent.routing.router import Ambiguous, Confident, RouteDecision, ToolRouter
from shop_agent.storage.chat_repo import ChatRepository
from shop_agent.storage.models import ActionStatus, ChatMessage, ChatRole, MetricsDelta, PendingAction

logger = get_logger(__name__)

SYSTEM_ACTOR = "system"


class TurnStatus(StrEnum):
    COMPLETED = "completed"
    AWAITING_APPROVAL = "awaiting_approval"
    FAILED = "failed"


@dataclass
class TurnOutcome:
    session_id: int
    status: TurnStatus
    text: str = ""
    messages: list[ChatMessage] = field(default_factory=list)
    pending_actions: list[PendingAction] = field(default_factory=list)


@dataclass
class _Turn:
    """Mutable state of one run of the completion loop."""

    session_id: int
    requester_id: str
    requester_name: str
    route: dict[str, Any]
    tools: list[dict[str, Any]]
    messages: list[ChatMessage] = field(default_factory=list)
    confirmed: set[str] = field(default_factory=set)


class ChatOrchestrator:
    def __init__(
        self,
        chat_repo: ChatRepository,
        router: ToolRouter,
        queue: ActionQueue,
        gateway: ApprovalGateway,
        tools: ToolRegistry,
        completion: CompletionClient,
        config: OrchestratorConfig,
        system_prompt: str = "",
        classifier: Optional[DomainClassifier] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._repo = chat_repo
        self._router = router
        self._queue = queue
        self._gateway = gateway
        self._tools = tools
        self._completion = completion
        self._config = config
        self._system_prompt = system_prompt
        self._classifier = classifier
        self._sleep = sleep
        # entries disappear once no turn holds or waits on the lock
        self._session_locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, session_id: int) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = self._session_locks[session_id] = asyncio.Lock()
        return lock

    async def handle_user_message(
        self,
        session_id: Optional[int],
        requester_id: str,
        text: str,
        requester_name: Optional[str] = None,
        domain_hint: Optional[str] = None,
    ) -> TurnOutcome:
        """Append the admin's message and run the turn until it ends or suspends.

        With no *session_id* a session owned by *requester_id* is created for
        this first message; its id is on the returned outcome. Turns on the
        same session run one at a time.
        """
        if session_id is None:
            session_id = (await self._repo.create_session(requester_id)).id
            logger.info("session_created", session_id=session_id, owner_id=requester_id)
        async with self._lock_for(session_id):
            with bound_contextvars(session_id=session_id, requester_id=requester_id):
                session = await self._repo.get_session(session_id)
                if session is None:
                    raise SessionNotFound(session_id)

                user_message = await self._repo.add_message(session_id, ChatRole.USER, {"text": text})
                if not session.title:
                    await self._repo.update_session_title(
                        session_id, generate_title(text, self._config.title_max_length)
                    )

                route = await self._route(text, domain_hint)
                turn = _Turn(
                    session_id=session_id,
                    requester_id=requester_id,
                    requester_name=requester_name or requester_id,
                    route=route,
                    tools=self._tools.api_definitions(route["exposed"]),
                    messages=[user_message],
                )
                return await self._run(turn)

    async def resume_after_decision(self, action: PendingAction) -> TurnOutcome | None:
        """Continue the conversation that queued *action* once it left ``pending``.

        Approved actions are executed here. The outcome is appended as the
        tool result, and the model is called again when nothing else has
        happened in the session since the tool call and no other call is
        still waiting.
        """
        async with self._lock_for(action.session_id):
            with bound_contextvars(session_id=action.session_id, action_id=action.id):
                current = await self._queue.get(action.id)
                if current is None or current.status == ActionStatus.PENDING:
                    logger.warning("resume_for_unresolved_action")
                    return None

                invocation = (
                    await self._repo.get_message(current.message_id) if current.message_id else None
                )
                if invocation is None or invocation.role != ChatRole.TOOL_INVOCATION:
                    logger.warning("resume_without_invocation", message_id=current.message_id)
                    return None
                tool_use_id = invocation.content["id"]
                history = await self._repo.get_messages(current.session_id)
                if any(
                    m.role == ChatRole.TOOL_RESULT and m.content.get("tool_use_id") == tool_use_id
                    for m in history
                ):
                    logger.info("action_already_resumed", status=str(current.status))
                    return None

                route = invocation.content.get("route") or {"utterance": "", "candidates": {}, "exposed": None}
                turn = _Turn(
                    session_id=current.session_id,
                    requester_id=current.requester_id,
                    requester_name=current.requester_id,
                    route=route,
                    tools=self._tools.api_definitions(route.get("exposed")),
                )

                content = await self._settle(turn, current)
                result = await self._repo.add_message(
                    current.session_id,
                    ChatRole.TOOL_RESULT,
                    {"tool_use_id": tool_use_id, "name": current.tool_name, **content},
                )
                turn.messages.append(result)

                history.append(result)
                later_dialogue = any(
                    m.id > invocation.id and m.role in (ChatRole.USER, ChatRole.ASSISTANT)
                    for m in history
                )
                if later_dialogue or unresolved_tool_uses(history):
                    return TurnOutcome(
                        current.session_id, TurnStatus.COMPLETED, content["content"], turn.messages
                    )
                return await self._run(turn)

    async def _settle(self, turn: _Turn, action: PendingAction) -> dict[str, Any]:
        """Execute an approved action, or describe why it did not run."""
        if action.status == ActionStatus.REJECTED:
            return {
                "content": f"The action was rejected by {action.rejected_by} and was not executed.",
                "is_error": True,
                "action_id": action.id,
                "status": str(action.status),
            }
        if action.status == ActionStatus.EXPIRED:
            return {
                "content": "The approval request expired before anyone approved it; the action was not executed.",
                "is_error": True,
                "action_id": action.id,
                "status": str(action.status),
            }
        if action.status != ActionStatus.APPROVED:
            # executed or failed without a stored result; report what is recorded
            return {
                "content": json.dumps(action.result) if action.result else (action.error_message or ""),
                "is_error": action.status == ActionStatus.FAILED,
                "action_id": action.id,
                "status": str(action.status),
            }

        tool = self._tools.get(action.tool_name)
        try:
            if tool is None:
                raise ShopAgentError(f"unknown tool '{action.tool_name}'")
            result = await tool.execute(**action.tool_input)
        except Exception as e:
            final = await self._queue.mark_failed(action.id, str(e))
            content = {"content": f"Error executing {action.tool_name}: {e}", "is_error": True}
        else:
            final = await self._queue.mark_executed(action.id, result)
            content = {"content": json.dumps(result, default=str), "is_error": False}
            await self._confirm_route(turn, action.tool_name)
        await self._repo.record_metrics(turn.session_id, MetricsDelta(tool_calls=1))
        await self._gateway.notify_outcome(final)
        return {**content, "action_id": action.id, "status": str(final.status)}

    async def _run(self, turn: _Turn) -> TurnOutcome:
        try:
            return await self._loop(turn)
        except ToolLoopExceeded as e:
            logger.warning("tool_loop_exceeded", max_iterations=e.max_iterations)
            notice = (
                f"I stopped after {e.max_iterations} tool calls without reaching an answer. "
                "Please narrow the request and try again."
            )
        except CompletionError as e:
            logger.error("turn_failed", error=str(e))
            notice = f"Sorry, I couldn't complete this request because the assistant service failed: {e}"
        message = await self._repo.add_message(
            turn.session_id, ChatRole.ASSISTANT, {"text": notice, "is_error": True}
        )
        turn.messages.append(message)
        return TurnOutcome(turn.session_id, TurnStatus.FAILED, notice, turn.messages)

    async def _loop(self, turn: _Turn) -> TurnOutcome:
        for _ in range(self._config.max_tool_iterations):
            history = await self._repo.get_messages(turn.session_id)
            completion, interaction = await self._complete(turn.session_id, build_messages(history), turn.tools)

            if completion.text:
                turn.messages.append(
                    await self._repo.add_message(
                        turn.session_id, ChatRole.ASSISTANT, {"text": completion.text}, interaction
                    )
                )
            if not completion.tool_uses:
                return TurnOutcome(turn.session_id, TurnStatus.COMPLETED, completion.text, turn.messages)

            queued: list[PendingAction] = []
            for tool_use in completion.tool_uses:
                if self._tools.get(tool_use.name) is not None and self._tools.is_mutating(tool_use.name):
                    try:
                        queued.append(await self._queue_for_approval(turn, tool_use, interaction))
                    except ShopAgentError as e:
                        return await self._write_not_queued(turn, tool_use, e)
                else:
                    await self._run_read(turn, tool_use, interaction)

            if queued:
                names = ", ".join(a.tool_name for a in queued)
                return TurnOutcome(
                    turn.session_id,
                    TurnStatus.AWAITING_APPROVAL,
                    f"Waiting for approval: {names}",
                    turn.messages,
                    queued,
                )
        raise ToolLoopExceeded(self._config.max_tool_iterations)

    async def _complete(
        self, session_id: int, messages: list[dict[str, Any]], tools: list[dict[str, Any]]
    ) -> tuple[Completion, dict[str, Any]]:
        """Call the model, retrying a single time after a transient failure.

        Every attempt, failed or not, is counted in the session metrics.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(2),
            wait=wait_fixed(self._config.retry_backoff_seconds),
            retry=retry_if_exception_type(TransientCompletionError),
            sleep=self._sleep,
            before_sleep=_log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                started = time.monotonic()
                try:
                    completion = await self._completion.send(self._system_prompt, messages, tools or None)
                except CompletionError:
                    await self._repo.record_metrics(
                        session_id, MetricsDelta(api_calls=1, duration_ms=_elapsed_ms(started))
                    )
                    raise

        duration_ms = _elapsed_ms(started)
        await self._repo.record_metrics(
            session_id,
            MetricsDelta(
                input_tokens=completion.input_tokens,
                output_tokens=completion.output_tokens,
                api_calls=1,
                duration_ms=duration_ms,
            ),
        )
        interaction = {
            "model": completion.model,
            "input_tokens": completion.input_tokens,
            "output_tokens": completion.output_tokens,
            "duration_ms": duration_ms,
            "stop_reason": completion.stop_reason,
        }
        return completion, interaction

    async def _run_read(self, turn: _Turn, tool_use: ToolUse, interaction: dict[str, Any]) -> None:
        turn.messages.append(
            await self._repo.add_message(
                turn.session_id,
                ChatRole.TOOL_INVOCATION,
                {"id": tool_use.id, "name": tool_use.name, "input": tool_use.input, "requires_approval": False},
                interaction,
            )
        )
        tool = self._tools.get(tool_use.name)
        if tool is None:
            content, is_error = f"Error: unknown tool '{tool_use.name}'", True
        else:
            try:
                result = await tool.execute(**tool_use.input)
            except Exception as e:
                logger.warning("tool_execution_error", tool=tool_use.name, error=str(e))
                content, is_error = f"Error executing {tool_use.name}: {e}", True
            else:
                content, is_error = json.dumps(result, default=str), False
                await self._confirm_route(turn, tool_use.name)
            await self._repo.record_metrics(turn.session_id, MetricsDelta(tool_calls=1))

        turn.messages.append(
            await self._repo.add_message(
                turn.session_id,
                ChatRole.TOOL_RESULT,
                {"tool_use_id": tool_use.id, "name": tool_use.name, "content": content, "is_error": is_error},
            )
        )

    async def _queue_for_approval(
        self, turn: _Turn, tool_use: ToolUse, interaction: dict[str, Any]
    ) -> PendingAction:
        """Record the call, queue it and post the approval card.

        An action that was created but could not be posted is rejected so it
        can never run, and the error is re-raised.
        """
        invocation = await self._repo.add_message(
            turn.session_id,
            ChatRole.TOOL_INVOCATION,
            {
                "id": tool_use.id,
                "name": tool_use.name,
                "input": tool_use.input,
                "requires_approval": True,
                "status": "pending_approval",
                "route": turn.route,
            },
            interaction,
        )
        turn.messages.append(invocation)

        action: PendingAction | None = None
        try:
            action = await self._queue.enqueue(
                turn.session_id, invocation.id, turn.requester_id, tool_use.name, tool_use.input
            )
            ref = await self._gateway.request_approval(
                action, turn.requester_name, self._tools.domain_of(tool_use.name)
            )
            return await self._queue.attach_external_ref(action.id, ref)
        except ShopAgentError as e:
            logger.error("approval_request_failed", tool=tool_use.name, error=str(e))
            if action is not None:
                try:
                    await self._queue.reject(action.id, SYSTEM_ACTOR)
                except (InvalidTransition, StorageError) as reject_error:
                    logger.error("orphan_action_reject_failed", action_id=action.id, error=str(reject_error))
            raise

    async def _write_not_queued(self, turn: _Turn, tool_use: ToolUse, error: ShopAgentError) -> TurnOutcome:
        reason = str(error)
        turn.messages.append(
            await self._repo.add_message(
                turn.session_id,
                ChatRole.TOOL_RESULT,
                {
                    "tool_use_id": tool_use.id,
                    "name": tool_use.name,
                    "content": f"The action could not be queued for approval and was not executed: {reason}",
                    "is_error": True,
                },
            )
        )
        notice = f"I couldn't submit {tool_use.name} for approval, so nothing was changed. ({reason})"
        turn.messages.append(
            await self._repo.add_message(
                turn.session_id, ChatRole.ASSISTANT, {"text": notice, "is_error": True}
            )
        )
        return TurnOutcome(turn.session_id, TurnStatus.FAILED, notice, turn.messages)

    async def _route(self, text: str, domain_hint: Optional[str]) -> dict[str, Any]:
        """Route the utterance and describe the result in a JSON-storable form.

        Without a hint the classifier picks the domains to search; when it
        fails or names none, every domain is searched.
        """
        domains: list[str] = [domain_hint] if domain_hint else await self._classify(text)
        try:
            decision: RouteDecision | None = await self._router.resolve(text, domains or None)
        except EmbeddingError as e:
            logger.warning("routing_unavailable", error=str(e))
            decision = None

        candidates: dict[str, dict[str, Any]] = {}
        if isinstance(decision, Confident):
            candidates[decision.tool_name] = {
                "example_id": decision.matched_example.id,
                "domain": decision.matched_example.domain,
                "score": decision.score,
            }
        elif isinstance(decision, Ambiguous):
            for candidate in decision.candidates:
                candidates[candidate.tool_name] = {
                    "example_id": candidate.example.id,
                    "domain": candidate.example.domain,
                    "score": candidate.score,
                }
        return {
            "utterance": text,
            "domains": domains,
            "decision": type(decision).__name__ if decision else "Unavailable",
            "candidates": candidates,
            "exposed": self._exposed_tools(list(candidates)),
        }

    async def _classify(self, text: str) -> list[str]:
        if self._classifier is None:
            return []
        try:
            return await self._classifier.classify(text)
        except CompletionError as e:
            logger.warning("domain_classification_failed", error=str(e))
            return []

    def _exposed_tools(self, routed: list[str]) -> list[str] | None:
        """Routed tools plus the read tools of their domains; None exposes every tool."""
        names = [n for n in routed if self._tools.get(n) is not None]
        if not names:
            return None
        domains = {self._tools.domain_of(n) for n in names}
        for tool in self._tools.all_tools():
            if tool.name not in names and tool.domain in domains and not self._tools.is_mutating(tool.name):
                names.append(tool.name)
        return names

    async def _confirm_route(self, turn: _Turn, tool_name: str) -> None:
        candidate = turn.route.get("candidates", {}).get(tool_name)
        if candidate is None or tool_name in turn.confirmed:
            return
        turn.confirmed.add(tool_name)
        try:
            await self._router.confirm(
                turn.route["utterance"], tool_name, candidate["domain"], candidate.get("example_id")
            )
        except (EmbeddingError, StorageError) as e:
            logger.warning("route_confirmation_failed", tool=tool_name, error=str(e))


def _log_retry(state: RetryCallState) -> None:
    error = state.outcome.exception() if state.outcome else None
    logger.warning("completion_retry", attempt=state.attempt_number, error=str(error))


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
