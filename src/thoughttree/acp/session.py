"""One ACP prompt session, from subprocess spawn to teardown."""

from __future__ import annotations

import asyncio
import contextlib
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from acp import PROTOCOL_VERSION, RequestError, spawn_agent_process
from acp.schema import ClientCapabilities, FileSystemCapability, Implementation

from thoughttree import __version__
from thoughttree.acp.client import StreamingClient
from thoughttree.acp.policy import rules_for_provider
from thoughttree.acp.prompt import compose_prompt
from thoughttree.debug_log import log
from thoughttree.errors import ProtocolError
from thoughttree.limits import MAX_STDERR_LINE_LENGTH, SHUTDOWN_TIMEOUT, SUBPROCESS_LIMIT
from thoughttree.providers import BUILTIN_PROVIDERS, ModelSelection

if TYPE_CHECKING:
    from pathlib import Path

    from thoughttree.acp.messages import EventSink
    from thoughttree.acp.pending import PendingPermissions
    from thoughttree.acp.prompt import Turn
    from thoughttree.providers import LaunchSpec

CLIENT_NAME = "thoughttree"
CLIENT_TITLE = "ThoughtTree"


class SessionPhase(StrEnum):
    """Linear lifecycle of a session; phases are never revisited."""

    IDLE = "idle"
    SPAWNING = "spawning"
    HANDSHAKING = "handshaking"
    SESSION_CREATED = "session_created"
    MODEL_SELECTING = "model_selecting"
    PROMPTING = "prompting"
    STREAMING = "streaming"
    TERMINATED = "terminated"

    def describe(self) -> str:
        return _PHASE_DESCRIPTIONS[self]


_PHASE_DESCRIPTIONS: dict[SessionPhase, str] = {
    SessionPhase.IDLE: "preparing the session",
    SessionPhase.SPAWNING: "starting the agent",
    SessionPhase.HANDSHAKING: "initializing the connection",
    SessionPhase.SESSION_CREATED: "creating the session",
    SessionPhase.MODEL_SELECTING: "selecting the model",
    SessionPhase.PROMPTING: "sending the prompt",
    SessionPhase.STREAMING: "streaming the response",
    SessionPhase.TERMINATED: "shutting down",
}


class SessionController:
    """Drive a single prompt through a freshly spawned agent process.

    Each controller runs once; the subprocess is always torn down when
    :meth:`run` returns or raises, including on task cancellation.
    """

    def __init__(
        self,
        node_id: str,
        launch: LaunchSpec,
        sandbox_root: Path,
        sink: EventSink,
        pending: PendingPermissions,
        *,
        model: str | None = None,
    ) -> None:
        self.node_id = node_id
        self.launch = launch
        self.sandbox_root = sandbox_root
        self.model = model
        self.phase = SessionPhase.IDLE
        self.succeeded: bool | None = None
        self.session_id: str = ""
        self.agent_info: Any = None

        self.client = StreamingClient(
            node_id,
            sink,
            pending,
            sandbox_root,
            rules=rules_for_provider(launch.provider),
        )
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task[None] | None = None

    def _advance(self, phase: SessionPhase) -> None:
        log.debug(f"[session {self.node_id}] {self.phase} -> {phase}")
        self.phase = phase

    def _fail(self, message: str) -> ProtocolError:
        return ProtocolError(self.phase, message)

    async def run(self, turns: list[Turn]) -> str:
        """Run the session and return the agent's stop reason.

        Raises:
            EmptyPromptError: before anything is spawned, if there is nothing to send.
            ProtocolError: any spawn, handshake, session, model or prompt failure.
        """
        if self.phase is not SessionPhase.IDLE:
            raise RuntimeError("SessionController.run() may only be called once")

        prompt = compose_prompt(turns)

        self._advance(SessionPhase.SPAWNING)
        log.info(f"[session {self.node_id}] Spawning {self.launch.command} in {self.sandbox_root}")
        try:
            async with spawn_agent_process(
                self.client,  # type: ignore[arg-type]
                str(self.launch.executable),
                *self.launch.args,
                env=self.launch.env,
                cwd=str(self.sandbox_root),
                transport_kwargs={
                    "limit": SUBPROCESS_LIMIT,
                    "shutdown_timeout": SHUTDOWN_TIMEOUT,
                },
            ) as (conn, process):
                self._process = process
                log.info(f"[session {self.node_id}] Agent process started with PID {process.pid}")
                self._start_stderr_drain(process)
                stop_reason = await self._converse(conn, process, prompt)
        except ProtocolError:
            self.succeeded = False
            raise
        except RequestError as exc:
            self.succeeded = False
            raise self._fail(str(exc)) from exc
        except OSError as exc:
            self.succeeded = False
            log.error(f"[session {self.node_id}] I/O failure while {self.phase.describe()}: {exc}")
            raise self._fail(f"{type(exc).__name__}: {exc}") from exc
        except Exception as exc:
            self.succeeded = False
            log.error(f"[session {self.node_id}] Unexpected error: {exc!r}")
            raise self._fail(f"Unexpected error: {exc}") from exc
        finally:
            await self._teardown()

        self.succeeded = True
        return stop_reason

    async def _converse(
        self, conn: Any, process: asyncio.subprocess.Process, prompt: list[Any]
    ) -> str:
        self._advance(SessionPhase.HANDSHAKING)
        init = await self._until_exit(
            process,
            conn.initialize(
                protocol_version=PROTOCOL_VERSION,
                client_capabilities=ClientCapabilities(
                    fs=FileSystemCapability(read_text_file=False, write_text_file=False),
                    terminal=False,
                ),
                client_info=Implementation(
                    name=CLIENT_NAME, title=CLIENT_TITLE, version=__version__
                ),
            ),
        )
        self.agent_info = init.agent_info
        log.info(
            f"[session {self.node_id}] Connected to agent: {init.agent_info} "
            f"(protocol: {init.protocol_version})"
        )

        self._advance(SessionPhase.SESSION_CREATED)
        created = await self._until_exit(
            process, conn.new_session(cwd=str(self.sandbox_root), mcp_servers=[])
        )
        self.session_id = created.session_id
        log.info(f"[session {self.node_id}] Session created: {self.session_id}")

        provider = BUILTIN_PROVIDERS.get(self.launch.provider)
        selects_in_session = (
            provider is not None and provider.model_selection is ModelSelection.SESSION
        )
        if self.model and selects_in_session:
            self._advance(SessionPhase.MODEL_SELECTING)
            log.info(f"[session {self.node_id}] Selecting model {self.model}")
            await self._until_exit(
                process, conn.set_session_model(model_id=self.model, session_id=self.session_id)
            )

        self._advance(SessionPhase.PROMPTING)
        log.info(f"[session {self.node_id}] Sending prompt ({len(prompt)} content blocks)")
        pending_prompt = conn.prompt(prompt=prompt, session_id=self.session_id)
        self._advance(SessionPhase.STREAMING)
        response = await self._until_exit(process, pending_prompt)

        stop_reason = str(response.stop_reason)
        log.info(f"[session {self.node_id}] Stop reason: {stop_reason}")
        return stop_reason

    async def _until_exit(self, process: asyncio.subprocess.Process, request: Any) -> Any:
        """Await ``request`` unless the agent process exits first."""
        request_task = asyncio.ensure_future(request)
        exit_task = asyncio.ensure_future(process.wait())
        try:
            done, _ = await asyncio.wait(
                {request_task, exit_task}, return_when=asyncio.FIRST_COMPLETED
            )
        except BaseException:
            request_task.cancel()
            exit_task.cancel()
            raise

        if request_task in done:
            exit_task.cancel()
            return request_task.result()

        request_task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await request_task
        raise self._fail(f"Agent exited unexpectedly with code {process.returncode}")

    def _start_stderr_drain(self, process: asyncio.subprocess.Process) -> None:
        if process.stderr is None:
            return
        self._stderr_task = asyncio.create_task(self._drain_stderr(process.stderr))

    async def _drain_stderr(self, stream: asyncio.StreamReader) -> None:
        name = self.launch.executable.name
        while line := await stream.readline():
            text = line.decode("utf-8", "replace").rstrip()
            if text:
                log.warning(f"[{name} stderr] {text[:MAX_STDERR_LINE_LENGTH]}")

    async def _teardown(self) -> None:
        self._advance(SessionPhase.TERMINATED)
        self.client.close()

        process = self._process
        if process is not None and process.returncode is None:
            log.info(f"[session {self.node_id}] Killing agent process {process.pid}")
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            with contextlib.suppress(Exception):
                await asyncio.wait_for(process.wait(), timeout=SHUTDOWN_TIMEOUT)

        if self._stderr_task is not None:
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await self._stderr_task


__all__ = ["SessionController", "SessionPhase"]
