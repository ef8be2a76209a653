"""Caller-facing operations: run agent sessions and answer their permission requests."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import TYPE_CHECKING

from thoughttree.acp.pending import PendingPermissions
from thoughttree.acp.sandbox import SandboxViolation, canonical_root, resolve_within
from thoughttree.acp.session import SessionController
from thoughttree.debug_log import log
from thoughttree.errors import ConfigurationError
from thoughttree.limits import DEFAULT_SEARCH_LIMIT
from thoughttree.providers import (
    EnvironmentSnapshot,
    ProviderKind,
    ProviderResolver,
    ProviderStatus,
)

if TYPE_CHECKING:
    from thoughttree.acp.messages import EventSink
    from thoughttree.acp.prompt import Turn
    from thoughttree.config import ConfigStore


class BridgeService:
    """Process-wide entry point shared by every session.

    Owns the pending-permission table and the provider resolver. Each call
    to :meth:`run_session` runs in its own task with its own subprocess.
    """

    def __init__(
        self,
        store: ConfigStore,
        sink: EventSink,
        *,
        resolver: ProviderResolver | None = None,
        pending: PendingPermissions | None = None,
    ) -> None:
        self.store = store
        self.sink = sink
        self.resolver = (
            resolver if resolver is not None else ProviderResolver(EnvironmentSnapshot.capture())
        )
        self.pending = pending if pending is not None else PendingPermissions()
        self._sessions: dict[str, asyncio.Task[str]] = {}

    @property
    def active_sessions(self) -> frozenset[str]:
        return frozenset(self._sessions)

    async def run_session(
        self,
        node_id: str,
        turns: list[Turn],
        provider: ProviderKind | str | None = None,
        model: str | None = None,
    ) -> str:
        """Run one prompt session and return the agent's stop reason."""
        if node_id in self._sessions:
            raise ConfigurationError(f"A session is already running for node {node_id}")

        kind = self.resolver.spec(provider or self.store.config.provider).kind
        notes_directory = self.store.notes_directory()
        if model is None:
            model = self.store.model_preference(kind)
        log.info(f"[bridge] Using notes directory: {notes_directory}")

        launch = self.resolver.resolve(kind, override=self.store.provider_path(kind), model=model)
        controller = SessionController(
            node_id,
            launch,
            notes_directory,
            self.sink,
            self.pending,
            model=model,
        )

        task = asyncio.create_task(controller.run(turns), name=f"thoughttree-session-{node_id}")
        self._sessions[node_id] = task
        try:
            return await task
        finally:
            self._sessions.pop(node_id, None)

    def respond_to_permission(self, request_id: str, option_id: str) -> None:
        """Deliver the human's decision; raises PermissionRequestNotFound."""
        self.pending.resolve(request_id, option_id)

    def check_provider(self, provider: ProviderKind | str) -> ProviderStatus:
        kind = self.resolver.spec(provider).kind
        return self.resolver.check(kind, self.store.provider_path(kind))

    def get_notes_directory(self) -> str | None:
        return self.store.get("notes_directory")

    async def set_notes_directory(self, path: str | Path) -> Path:
        directory = Path(path).expanduser()
        if not directory.is_absolute():
            raise ConfigurationError(f"Notes directory must be an absolute path: {directory}")
        if not directory.is_dir():
            raise ConfigurationError(f"Notes directory does not exist: {directory}")
        self.store.set("notes_directory", str(directory))
        await self.store.save()
        log.info(f"[bridge] Notes directory set to: {directory}")
        return directory

    async def set_provider(self, provider: ProviderKind | str) -> ProviderKind:
        kind = self.resolver.spec(provider).kind
        self.store.set("provider", kind)
        await self.store.save()
        return kind

    async def set_provider_path(self, provider: ProviderKind | str, path: str | None) -> None:
        """Store a validated executable override, or clear it when ``path`` is None."""
        kind = self.resolver.spec(provider).kind
        paths = dict(self.store.config.provider_paths)
        if path is None:
            paths.pop(kind, None)
        else:
            validated = await self.resolver.validate_executable(kind, path)
            paths[kind] = str(validated)
        self.store.set("provider_paths", paths)
        await self.store.save()
        self.resolver.invalidate()

    async def set_model_preference(self, provider: ProviderKind | str, model: str | None) -> None:
        kind = self.resolver.spec(provider).kind
        preferences = dict(self.store.config.model_preferences)
        if model:
            preferences[kind] = model
        else:
            preferences.pop(kind, None)
        self.store.set("model_preferences", preferences)
        await self.store.save()

    def search_files(self, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> list[str]:
        """Find files in the notes directory whose relative path contains ``query``."""
        try:
            root = canonical_root(self.store.notes_directory())
        except SandboxViolation as exc:
            raise ConfigurationError(f"Notes directory is unusable: {exc.reason}") from exc

        needle = query.strip().lower()
        matches: list[str] = []
        # Real directories on the current walk path; a link back into one is a cycle.
        chains: dict[str, frozenset[Path]] = {os.fspath(root): frozenset({root})}
        for dirpath, dirnames, filenames in os.walk(root, followlinks=True):
            ancestors = chains.pop(dirpath)
            descend: list[str] = []
            for name in sorted(dirnames):
                if name.startswith("."):
                    continue
                try:
                    real = Path(dirpath, name).resolve()
                except (OSError, RuntimeError):
                    continue
                if real in ancestors or not real.is_relative_to(root):
                    continue
                chains[os.path.join(dirpath, name)] = ancestors | {real}
                descend.append(name)
            dirnames[:] = descend
            for filename in sorted(filenames):
                if filename.startswith("."):
                    continue
                candidate = Path(dirpath) / filename
                relative = candidate.relative_to(root).as_posix()
                if needle and needle not in relative.lower():
                    continue
                try:
                    resolve_within(root, candidate)
                except SandboxViolation:
                    continue
                matches.append(relative)
                if len(matches) >= limit:
                    return matches
        return matches

    async def shutdown(self) -> None:
        """Cancel running sessions (killing their agents) and pending escalations."""
        tasks = list(self._sessions.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        cancelled = self.pending.cancel_all()
        if tasks or cancelled:
            log.info(
                f"[bridge] Shutdown cancelled {len(tasks)} session(s) and "
                f"{cancelled} pending permission request(s)"
            )


__all__ = ["BridgeService"]
