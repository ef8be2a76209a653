"""ACP client callbacks: streaming relay and permission arbitration."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from acp import RequestError
from acp.schema import (
    AgentMessageChunk,
    AgentThoughtChunk,
    AllowedOutcome,
    DeniedOutcome,
    PermissionOption,
    RequestPermissionResponse,
    ToolCallProgress,
    ToolCallStart,
    ToolCallUpdate,
)

from thoughttree.acp import messages
from thoughttree.acp.policy import (
    DEFAULT_RULES,
    PermissionRequest,
    PolicyRule,
    PolicyVerdict,
    classify_permission,
)
from thoughttree.debug_log import log

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from thoughttree.acp.pending import PendingPermissions


def selected(option_id: str) -> RequestPermissionResponse:
    return RequestPermissionResponse(outcome=AllowedOutcome(outcome="selected", optionId=option_id))


def cancelled() -> RequestPermissionResponse:
    return RequestPermissionResponse(outcome=DeniedOutcome(outcome="cancelled"))


def _describe_locations(tool_call: ToolCallUpdate) -> tuple[str, ...]:
    if not tool_call.locations:
        return ()
    return tuple(str(location.path) for location in tool_call.locations)


class StreamingClient:
    """Client side of one ACP session.

    Text is forwarded to the sink as soon as it arrives. Permission requests
    are classified by the policy; escalations are parked in the shared
    :class:`PendingPermissions` table until the human answers.
    """

    def __init__(
        self,
        node_id: str,
        sink: messages.EventSink,
        pending: PendingPermissions,
        sandbox_root: Path,
        *,
        rules: Sequence[PolicyRule] = DEFAULT_RULES,
    ) -> None:
        self.node_id = node_id
        self._sink = sink
        self._pending = pending
        self._sandbox_root = sandbox_root
        self._rules = tuple(rules)

        self._connection: Any = None
        self._escalations: set[str] = set()
        self._tool_titles: dict[str, str] = {}
        self._closed = False

    def on_connect(self, conn: Any) -> None:
        self._connection = conn

    @property
    def outstanding_escalations(self) -> frozenset[str]:
        return frozenset(self._escalations)

    def close(self) -> None:
        """Cancel escalations still waiting on the human; later requests are cancelled."""
        self._closed = True
        for request_id in list(self._escalations):
            self._pending.discard(request_id)
        self._escalations.clear()

    def _emit(self, event: messages.AgentEvent) -> None:
        try:
            event.emit_to(self._sink)
        except Exception as exc:
            log.error(f"[client] Failed to emit {event.event}: {exc}")

    async def session_update(self, session_id: str, update: Any, **kwargs: Any) -> None:
        del session_id, kwargs
        if isinstance(update, AgentMessageChunk):
            if update.content.type == "text":
                self._emit(messages.StreamChunk(self.node_id, update.content.text))
        elif isinstance(update, AgentThoughtChunk):
            if update.content.type == "text":
                log.debug(f"[client] [Thought] {update.content.text}")
                self._emit(messages.ThoughtChunk(self.node_id, update.content.text))
        elif isinstance(update, ToolCallStart):
            log.info(f"[client] [Tool Call] {update.title} ({update.tool_call_id})")
            self._tool_titles[update.tool_call_id] = update.title
            self._emit(
                messages.ToolCallNotice(
                    self.node_id, update.tool_call_id, update.title, update.status
                )
            )
        elif isinstance(update, ToolCallProgress):
            if update.title:
                self._tool_titles[update.tool_call_id] = update.title
            title = self._tool_titles.get(update.tool_call_id, "Tool call")
            log.debug(f"[client] [Tool Update] {title}: status={update.status}")
            self._emit(
                messages.ToolCallNotice(self.node_id, update.tool_call_id, title, update.status)
            )
        else:
            log.debug(f"[client] [Other update] {type(update).__name__}")

    async def request_permission(
        self,
        options: list[PermissionOption],
        session_id: str,
        tool_call: ToolCallUpdate,
        **kwargs: Any,
    ) -> RequestPermissionResponse:
        del session_id, kwargs
        tool_id = str(tool_call.tool_call_id)
        tool_name = tool_call.title or "Unknown"
        log.info(f"[client] Permission requested - tool: {tool_name} (id: {tool_id})")

        if self._closed:
            log.warning(f"[client] Session closed; cancelling permission for {tool_name}")
            return cancelled()

        request = PermissionRequest(
            tool_id=tool_id,
            tool_name=tool_name,
            paths=_describe_locations(tool_call),
            option_ids=tuple(option.option_id for option in options),
        )
        decision = classify_permission(request, self._sandbox_root, self._rules)

        if decision.verdict is PolicyVerdict.AUTO_APPROVE and decision.option_id is not None:
            log.info(f"[client] Auto-approving tool '{tool_name}' with {decision.option_id}")
            return selected(decision.option_id)

        if decision.verdict is PolicyVerdict.ESCALATE:
            return await self._escalate(request, options)

        log.warning(f"[client] Tool '{tool_name}' denied ({decision.reason})")
        return cancelled()

    async def _escalate(
        self, request: PermissionRequest, options: list[PermissionOption]
    ) -> RequestPermissionResponse:
        request_id, waiter = self._pending.create()
        self._escalations.add(request_id)
        try:
            prompt = messages.PermissionPrompt(
                id=request_id,
                tool_type=request.tool_id,
                tool_name=request.tool_name,
                description=", ".join(request.paths) or "No additional details",
                options=[
                    messages.PermissionOptionPayload(id=option.option_id, label=option.name)
                    for option in options
                ],
            )
            try:
                prompt.emit_to(self._sink)
            except Exception as exc:
                log.error(f"[client] Failed to emit permission request: {exc}")
                self._pending.discard(request_id)
                return cancelled()

            log.info(f"[client] Waiting for user decision on {request.tool_name} ({request_id})")
            answer = await waiter.wait()
        finally:
            self._escalations.discard(request_id)
            # No-op when already resolved; otherwise removes the slot we abandon.
            self._pending.discard(request_id)

        if answer.option_id is None:
            log.warning(f"[client] Permission request {request_id} cancelled (slot dropped)")
            return cancelled()
        if answer.option_id not in request.option_ids:
            log.warning(
                f"[client] Permission answer {answer.option_id!r} is not one of the offered "
                f"options {list(request.option_ids)}; cancelling"
            )
            return cancelled()
        return selected(answer.option_id)

    # The bridge declares no fs or terminal capability; agents that call these anyway
    # are refused. File access is mediated by request_permission alone.

    async def read_text_file(self, path: str, session_id: str, **kwargs: Any) -> Any:
        del session_id, kwargs
        log.warning(f"[client] fs/read_text_file refused: {path}")
        raise RequestError.invalid_params({"details": "Client filesystem access is disabled"})

    async def write_text_file(self, content: str, path: str, session_id: str, **kwargs: Any) -> Any:
        del content, session_id, kwargs
        log.warning(f"[client] fs/write_text_file refused: {path}")
        raise RequestError.invalid_params({"details": "Client filesystem access is disabled"})

    async def create_terminal(self, command: str, session_id: str, **kwargs: Any) -> Any:
        del session_id, kwargs
        log.warning(f"[client] terminal/create refused: {command}")
        raise RequestError.invalid_params({"details": "Client terminal access is disabled"})


__all__ = ["StreamingClient", "cancelled", "selected"]
