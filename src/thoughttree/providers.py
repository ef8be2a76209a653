"""Provider executable resolution.

Resolution never searches ``PATH``: a same-named binary planted earlier in
``PATH`` must not be executable by the bridge. Candidates are checked, in
order, from an environment-variable override, the user's configured path,
a fixed table of installation locations, and well-known user-local
install directories.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import platform
from dataclasses import dataclass, field
from enum import Enum, StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from thoughttree.debug_log import log
from thoughttree.errors import ResolutionError
from thoughttree.limits import VERSION_QUERY_TIMEOUT

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping


class ProviderKind(StrEnum):
    """Supported agent providers."""

    CLAUDE_CODE = "claude-code"
    GEMINI_CLI = "gemini-cli"


DEFAULT_PROVIDER = ProviderKind.CLAUDE_CODE


class ModelSelection(Enum):
    """How a provider is told which model to run."""

    SESSION = "session"  # session/set_model after session/new
    SPAWN_FLAG = "spawn_flag"  # command-line flag, fixed for the process lifetime


class ResolutionSource(StrEnum):
    ENVIRONMENT = "environment"
    USER_OVERRIDE = "user_override"
    KNOWN_LOCATION = "known_location"
    USER_LOCAL = "user_local"


@dataclass(frozen=True, slots=True)
class ProviderSpec:
    """Static description of how to find and launch a provider."""

    kind: ProviderKind
    display_name: str
    executable: str
    env_var: str
    package: str
    version_markers: tuple[str, ...]
    model_selection: ModelSelection
    base_args: tuple[str, ...] = ()
    model_flag: str | None = None
    requires_node: bool = True

    @property
    def install_hint(self) -> str:
        return (
            f"Install it with: npm install -g {self.package}\n"
            f"or set {self.env_var} to the absolute path of '{self.executable}'."
        )


BUILTIN_PROVIDERS: dict[ProviderKind, ProviderSpec] = {
    ProviderKind.CLAUDE_CODE: ProviderSpec(
        kind=ProviderKind.CLAUDE_CODE,
        display_name="Claude Code",
        executable="claude-code-acp",
        env_var="THOUGHTTREE_CLAUDE_CODE_PATH",
        package="@zed-industries/claude-code-acp",
        version_markers=("claude-code-acp", "claude"),
        model_selection=ModelSelection.SESSION,
    ),
    ProviderKind.GEMINI_CLI: ProviderSpec(
        kind=ProviderKind.GEMINI_CLI,
        display_name="Gemini CLI",
        executable="gemini",
        env_var="THOUGHTTREE_GEMINI_CLI_PATH",
        package="@google/gemini-cli",
        version_markers=("gemini",),
        model_selection=ModelSelection.SPAWN_FLAG,
        base_args=("--experimental-acp",),
        model_flag="--model",
    ),
}

_IS_WINDOWS = platform.system() == "Windows"

KNOWN_INSTALL_DIRS: tuple[Path, ...] = (
    (Path(os.environ.get("ProgramFiles", r"C:\Program Files")) / "nodejs",)
    if _IS_WINDOWS
    else (
        Path("/opt/homebrew/bin"),
        Path("/usr/local/bin"),
        Path("/usr/bin"),
    )
)

USER_LOCAL_INSTALL_DIRS: tuple[str, ...] = (
    ".local/bin",
    ".npm-global/bin",
    ".bun/bin",
    ".volta/bin",
    ".yarn/bin",
    "AppData/Roaming/npm",
)


@dataclass(frozen=True, slots=True)
class EnvironmentSnapshot:
    """Process environment captured once and handed to the resolver explicitly."""

    variables: Mapping[str, str]
    home: Path

    @classmethod
    def capture(cls) -> EnvironmentSnapshot:
        return cls(variables=dict(os.environ), home=Path.home())

    def get(self, name: str) -> str | None:
        value = self.variables.get(name)
        return value if value else None


@dataclass(frozen=True, slots=True)
class LaunchSpec:
    """A validated executable plus everything needed to spawn it."""

    provider: ProviderKind
    executable: Path
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    source: ResolutionSource = ResolutionSource.KNOWN_LOCATION

    @property
    def command(self) -> list[str]:
        return [str(self.executable), *self.args]


@dataclass(frozen=True, slots=True)
class ProviderStatus:
    provider: ProviderKind
    available: bool
    error_message: str | None = None


def is_executable_file(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def _executable_names(name: str) -> tuple[str, ...]:
    if _IS_WINDOWS:
        return (f"{name}.cmd", f"{name}.exe", name)
    return (name,)


def _needs_node(path: Path) -> bool:
    """Return True when the executable is a script run through ``node``."""
    try:
        with path.open("rb") as handle:
            first_line = handle.readline(256)
    except OSError:
        return False
    return first_line.startswith(b"#!") and b"node" in first_line


class ProviderResolver:
    """Resolve provider executables from an explicit environment snapshot.

    Results are cached per ``(provider, override)`` until :meth:`invalidate`.
    """

    def __init__(
        self,
        environment: EnvironmentSnapshot,
        providers: Mapping[ProviderKind, ProviderSpec] | None = None,
        *,
        known_dirs: Iterable[Path] = KNOWN_INSTALL_DIRS,
        user_local_dirs: Iterable[str] = USER_LOCAL_INSTALL_DIRS,
    ) -> None:
        self._environment = environment
        self._providers = dict(providers if providers is not None else BUILTIN_PROVIDERS)
        self._known_dirs = tuple(known_dirs)
        self._user_local_dirs = tuple(environment.home / rel for rel in user_local_dirs)
        self._cache: dict[tuple[ProviderKind, str | None], tuple[Path, ResolutionSource]] = {}

    def spec(self, provider: ProviderKind | str) -> ProviderSpec:
        try:
            return self._providers[ProviderKind(provider)]
        except (ValueError, KeyError) as exc:
            valid = ", ".join(kind.value for kind in self._providers)
            raise ResolutionError(
                str(provider), f"Unknown provider '{provider}'. Valid providers: {valid}"
            ) from exc

    def invalidate(self) -> None:
        """Forget cached resolutions, e.g. after the user installs a provider."""
        self._cache.clear()

    def locate(
        self, provider: ProviderKind | str, override: str | None = None
    ) -> tuple[Path, ResolutionSource]:
        spec = self.spec(provider)
        key = (spec.kind, override)
        cached = self._cache.get(key)
        if cached is not None and is_executable_file(cached[0]):
            return cached

        found = self._locate_uncached(spec, override)
        self._cache[key] = found
        log.info(f"[providers] {spec.kind}: resolved {found[0]} via {found[1]}")
        return found

    def _locate_uncached(
        self, spec: ProviderSpec, override: str | None
    ) -> tuple[Path, ResolutionSource]:
        env_value = self._environment.get(spec.env_var)
        if env_value is not None:
            path = Path(env_value).expanduser()
            if not is_executable_file(path):
                raise ResolutionError(
                    spec.kind,
                    f"{spec.env_var} points to '{path}', which is not an executable file.",
                    f"Fix or unset {spec.env_var}.",
                )
            return path, ResolutionSource.ENVIRONMENT

        if override:
            path = Path(override).expanduser()
            if not is_executable_file(path):
                raise ResolutionError(
                    spec.kind,
                    f"Configured {spec.display_name} path '{path}' does not exist "
                    "or is not executable.",
                    "Update the provider path in settings or clear it to use auto-detection.",
                )
            return path, ResolutionSource.USER_OVERRIDE

        path = self._search(spec.executable, self._known_dirs)
        if path is not None:
            return path, ResolutionSource.KNOWN_LOCATION

        path = self._search(spec.executable, self._user_local_dirs)
        if path is not None:
            return path, ResolutionSource.USER_LOCAL

        raise ResolutionError(
            spec.kind,
            f"{spec.display_name} ACP executable '{spec.executable}' was not found.",
            spec.install_hint,
        )

    @staticmethod
    def _search(name: str, directories: Iterable[Path]) -> Path | None:
        for directory in directories:
            for candidate_name in _executable_names(name):
                candidate = directory / candidate_name
                if is_executable_file(candidate):
                    return candidate
        return None

    def _node_dir(self, spec: ProviderSpec, executable: Path) -> Path:
        """Locate the Node.js runtime for a node-script executable."""
        node = self._search("node", (executable.parent, *self._known_dirs, *self._user_local_dirs))
        if node is None:
            raise ResolutionError(
                spec.kind,
                f"{spec.display_name} requires Node.js, but 'node' was not found.",
                "Install Node.js from https://nodejs.org (version 18 or later).",
            )
        return node.parent

    def _spawn_env(self, spec: ProviderSpec, executable: Path) -> dict[str, str]:
        env = dict(self._environment.variables)
        extra_dirs = [executable.parent]
        if spec.requires_node and _needs_node(executable):
            extra_dirs.append(self._node_dir(spec, executable))

        existing = [entry for entry in env.get("PATH", "").split(os.pathsep) if entry]
        merged: list[str] = []
        for entry in [str(directory) for directory in extra_dirs] + existing:
            if entry not in merged:
                merged.append(entry)
        env["PATH"] = os.pathsep.join(merged)
        return env

    def resolve(
        self,
        provider: ProviderKind | str,
        *,
        override: str | None = None,
        model: str | None = None,
    ) -> LaunchSpec:
        """Produce the executable, arguments and environment for spawning ``provider``."""
        spec = self.spec(provider)
        executable, source = self.locate(spec.kind, override)

        args = list(spec.base_args)
        if model and spec.model_selection is ModelSelection.SPAWN_FLAG and spec.model_flag:
            args.extend([spec.model_flag, model])

        return LaunchSpec(
            provider=spec.kind,
            executable=executable,
            args=tuple(args),
            env=self._spawn_env(spec, executable),
            source=source,
        )

    async def validate_executable(self, provider: ProviderKind | str, path: str | Path) -> Path:
        """Run ``path --version`` and require a provider-identifying marker in the output.

        Used before accepting a user-supplied override.
        """
        spec = self.spec(provider)
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            raise ResolutionError(spec.kind, f"Path must be absolute: {candidate}")
        if not is_executable_file(candidate):
            raise ResolutionError(
                spec.kind,
                f"'{candidate}' does not exist or is not executable.",
                spec.install_hint,
            )

        env = self._spawn_env(spec, candidate)
        log.info(f"[providers] Validating {spec.kind} executable: {candidate}")
        try:
            process = await asyncio.create_subprocess_exec(
                str(candidate),
                "--version",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=env,
            )
        except OSError as exc:
            raise ResolutionError(
                spec.kind, f"Failed to run '{candidate} --version': {exc}"
            ) from exc

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), VERSION_QUERY_TIMEOUT)
        except TimeoutError as exc:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            raise ResolutionError(
                spec.kind, f"'{candidate} --version' did not finish in {VERSION_QUERY_TIMEOUT}s"
            ) from exc

        output = stdout.decode("utf-8", "replace").lower()
        if not any(marker in output for marker in spec.version_markers):
            log.warning(f"[providers] Rejected {candidate}: version output {output[:200]!r}")
            raise ResolutionError(
                spec.kind,
                f"'{candidate}' does not look like {spec.display_name}.",
                f"Expected the version output to mention one of: "
                f"{', '.join(spec.version_markers)}.",
            )
        return candidate

    def check(self, provider: ProviderKind | str, override: str | None = None) -> ProviderStatus:
        """Report whether ``provider`` can be launched.

        Resolution failures are reported in the status; an unknown provider
        raises :class:`ResolutionError`.
        """
        kind = self.spec(provider).kind
        try:
            self.resolve(kind, override=override)
        except ResolutionError as exc:
            return ProviderStatus(kind, False, str(exc))
        return ProviderStatus(kind, True, None)


__all__ = [
    "BUILTIN_PROVIDERS",
    "DEFAULT_PROVIDER",
    "EnvironmentSnapshot",
    "LaunchSpec",
    "ModelSelection",
    "ProviderKind",
    "ProviderResolver",
    "ProviderSpec",
    "ProviderStatus",
    "ResolutionSource",
]
