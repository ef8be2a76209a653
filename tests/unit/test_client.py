"""Unit tests for the streaming ACP client."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest
from acp import RequestError, text_block
from acp.schema import (
    AgentMessageChunk,
    AgentThoughtChunk,
    AllowedOutcome,
    DeniedOutcome,
    PermissionOption,
    ToolCallLocation,
    ToolCallProgress,
    ToolCallStart,
    ToolCallUpdate,
)

from thoughttree.acp.client import StreamingClient
from thoughttree.acp.pending import PendingPermissions
from tests.helpers import RecordingSink

if TYPE_CHECKING:
    from pathlib import Path

pytestmark = pytest.mark.unit


def _options() -> list[PermissionOption]:
    return [
        PermissionOption(kind="allow_once", name="Allow once", optionId="allow-1"),
        PermissionOption(kind="reject_once", name="Reject once", optionId="reject-1"),
    ]


def _tool_call(title: str, *paths: str, tool_call_id: str = "call-1") -> ToolCallUpdate:
    return ToolCallUpdate(
        toolCallId=tool_call_id,
        title=title,
        locations=[ToolCallLocation(path=path) for path in paths] or None,
    )


@pytest.fixture
def client(notes_dir: Path, sink: RecordingSink, pending: PendingPermissions) -> StreamingClient:
    return StreamingClient("node-1", sink, pending, notes_dir)


class AnsweringSink(RecordingSink):
    """Answers each permission prompt on the next loop iteration."""

    def __init__(self, pending: PendingPermissions, choose: str) -> None:
        super().__init__()
        self.pending = pending
        self.choose = choose

    def emit(self, event: str, payload: dict) -> None:
        super().emit(event, payload)
        if event == "permission-request":
            asyncio.get_running_loop().call_soon(
                self.pending.resolve, payload["id"], self.choose
            )


class TestSessionUpdates:
    async def test_message_chunks_stream_in_order(
        self, client: StreamingClient, sink: RecordingSink
    ) -> None:
        for piece in ("Your ", "inbox ", "is empty."):
            await client.session_update(
                "s1",
                AgentMessageChunk(sessionUpdate="agent_message_chunk", content=text_block(piece)),
            )

        assert sink.payloads("stream-chunk") == [
            {"node_id": "node-1", "chunk": "Your "},
            {"node_id": "node-1", "chunk": "inbox "},
            {"node_id": "node-1", "chunk": "is empty."},
        ]
        assert sink.text() == "Your inbox is empty."

    async def test_thoughts_use_their_own_event(
        self, client: StreamingClient, sink: RecordingSink
    ) -> None:
        await client.session_update(
            "s1",
            AgentThoughtChunk(sessionUpdate="agent_thought_chunk", content=text_block("hmm")),
        )
        assert sink.payloads("thought-chunk") == [{"node_id": "node-1", "chunk": "hmm"}]
        assert sink.payloads("stream-chunk") == []

    async def test_tool_call_progress_keeps_start_title(
        self, client: StreamingClient, sink: RecordingSink
    ) -> None:
        await client.session_update(
            "s1", ToolCallStart(sessionUpdate="tool_call", toolCallId="t1", title="Read inbox.md")
        )
        await client.session_update(
            "s1",
            ToolCallProgress(sessionUpdate="tool_call_update", toolCallId="t1", status="completed"),
        )

        notices = sink.payloads("tool-call")
        assert [notice["title"] for notice in notices] == ["Read inbox.md", "Read inbox.md"]
        assert notices[1]["status"] == "completed"

    async def test_sink_failure_does_not_abort_stream(
        self, notes_dir: Path, pending: PendingPermissions
    ) -> None:
        failing = RecordingSink(fail_on="stream-chunk")
        client = StreamingClient("node-1", failing, pending, notes_dir)

        await client.session_update(
            "s1", AgentMessageChunk(sessionUpdate="agent_message_chunk", content=text_block("x"))
        )
        assert failing.events == []


class TestPermissionDecisions:
    async def test_read_inside_sandbox_is_auto_approved(
        self, client: StreamingClient, notes_dir: Path, sink: RecordingSink
    ) -> None:
        response = await client.request_permission(
            _options(), "s1", _tool_call("Read", str(notes_dir / "inbox.md"))
        )

        assert isinstance(response.outcome, AllowedOutcome)
        assert response.outcome.option_id == "allow-1"
        assert sink.events == []

    async def test_read_outside_sandbox_is_cancelled(
        self, client: StreamingClient, tmp_path: Path, sink: RecordingSink
    ) -> None:
        response = await client.request_permission(
            _options(), "s1", _tool_call("Read", str(tmp_path / "elsewhere.txt"))
        )
        assert isinstance(response.outcome, DeniedOutcome)
        assert sink.events == []

    async def test_bash_is_cancelled_without_prompting(
        self, client: StreamingClient, sink: RecordingSink, pending: PendingPermissions
    ) -> None:
        response = await client.request_permission(_options(), "s1", _tool_call("Bash"))

        assert isinstance(response.outcome, DeniedOutcome)
        assert sink.payloads("permission-request") == []
        assert len(pending) == 0

    async def test_missing_title_is_treated_as_unknown(self, client: StreamingClient) -> None:
        response = await client.request_permission(
            _options(), "s1", ToolCallUpdate(toolCallId="call-1")
        )
        assert isinstance(response.outcome, DeniedOutcome)


class TestEscalation:
    async def test_webfetch_round_trip(self, notes_dir: Path, pending: PendingPermissions) -> None:
        sink = AnsweringSink(pending, "allow-1")
        client = StreamingClient("node-1", sink, pending, notes_dir)

        response = await asyncio.wait_for(
            client.request_permission(
                _options(), "s1", _tool_call("WebFetch", "https://example.com")
            ),
            timeout=5,
        )

        assert isinstance(response.outcome, AllowedOutcome)
        assert response.outcome.option_id == "allow-1"
        [prompt] = sink.payloads("permission-request")
        assert prompt["tool_name"] == "WebFetch"
        assert prompt["tool_type"] == "call-1"
        assert prompt["description"] == "https://example.com"
        assert prompt["options"] == [
            {"id": "allow-1", "label": "Allow once"},
            {"id": "reject-1", "label": "Reject once"},
        ]
        assert len(pending) == 0
        assert client.outstanding_escalations == frozenset()

    async def test_human_can_reject(self, notes_dir: Path, pending: PendingPermissions) -> None:
        sink = AnsweringSink(pending, "reject-1")
        client = StreamingClient("node-1", sink, pending, notes_dir)

        response = await client.request_permission(_options(), "s1", _tool_call("WebFetch"))

        assert isinstance(response.outcome, AllowedOutcome)
        assert response.outcome.option_id == "reject-1"

    async def test_description_defaults_when_no_locations(
        self, notes_dir: Path, pending: PendingPermissions
    ) -> None:
        sink = AnsweringSink(pending, "allow-1")
        client = StreamingClient("node-1", sink, pending, notes_dir)

        await client.request_permission(_options(), "s1", _tool_call("WebFetch"))

        assert sink.payloads("permission-request")[0]["description"] == "No additional details"

    async def test_unoffered_answer_is_cancelled(
        self, notes_dir: Path, pending: PendingPermissions
    ) -> None:
        sink = AnsweringSink(pending, "allow-always")
        client = StreamingClient("node-1", sink, pending, notes_dir)

        response = await client.request_permission(_options(), "s1", _tool_call("WebFetch"))

        assert isinstance(response.outcome, DeniedOutcome)

    async def test_emit_failure_cancels(
        self, notes_dir: Path, pending: PendingPermissions
    ) -> None:
        sink = RecordingSink(fail_on="permission-request")
        client = StreamingClient("node-1", sink, pending, notes_dir)

        response = await client.request_permission(_options(), "s1", _tool_call("WebFetch"))

        assert isinstance(response.outcome, DeniedOutcome)
        assert len(pending) == 0

    async def test_close_cancels_outstanding_escalation(
        self, client: StreamingClient, sink: RecordingSink, pending: PendingPermissions
    ) -> None:
        task = asyncio.create_task(
            client.request_permission(_options(), "s1", _tool_call("WebFetch"))
        )
        while not sink.payloads("permission-request"):
            await asyncio.sleep(0)
        request_id = sink.payloads("permission-request")[0]["id"]
        assert client.outstanding_escalations == {request_id}

        client.close()
        response = await asyncio.wait_for(task, timeout=5)

        assert isinstance(response.outcome, DeniedOutcome)
        assert request_id not in pending

    async def test_requests_after_close_are_cancelled(
        self, client: StreamingClient, notes_dir: Path, sink: RecordingSink
    ) -> None:
        client.close()
        response = await client.request_permission(
            _options(), "s1", _tool_call("Read", str(notes_dir / "inbox.md"))
        )
        assert isinstance(response.outcome, DeniedOutcome)
        assert sink.events == []


class TestRefusedCapabilities:
    async def test_file_reads_are_refused(self, client: StreamingClient, notes_dir: Path) -> None:
        with pytest.raises(RequestError) as exc_info:
            await client.read_text_file(str(notes_dir / "inbox.md"), "s1")
        assert exc_info.value.code == -32602

    async def test_file_writes_are_refused(
        self, client: StreamingClient, notes_dir: Path
    ) -> None:
        with pytest.raises(RequestError):
            await client.write_text_file("x", str(notes_dir / "inbox.md"), "s1")
        assert (notes_dir / "inbox.md").read_text() == "# Inbox\n"

    async def test_terminals_are_refused(self, client: StreamingClient) -> None:
        with pytest.raises(RequestError):
            await client.create_terminal("rm -rf /", "s1")
