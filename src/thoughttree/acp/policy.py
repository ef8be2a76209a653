"""Least-privilege policy for agent permission requests.

Rules are evaluated in table order and the first match wins, so the deny
rule is always listed before the read-only rule. Requests that match no
rule are denied.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from thoughttree.acp.sandbox import SandboxViolation, resolve_within
from thoughttree.debug_log import log
from thoughttree.providers import ProviderKind

if TYPE_CHECKING:
    import os
    from collections.abc import Mapping, Sequence


class PolicyVerdict(StrEnum):
    DENY = "deny"
    AUTO_APPROVE = "auto_approve"
    ESCALATE = "escalate"


class ToolCategory(StrEnum):
    """Tool families the policy distinguishes by name."""

    DESTRUCTIVE = "destructive"
    READ_ONLY = "read_only"
    NETWORK_FETCH = "network_fetch"


class DecisionReason(StrEnum):
    DENY_LISTED = "deny_listed"
    OUTSIDE_SANDBOX = "outside_sandbox"
    NO_OPTIONS = "no_options"
    READ_ONLY_IN_SANDBOX = "read_only_in_sandbox"
    ASK_EVERY_TIME = "ask_every_time"
    UNKNOWN_TOOL = "unknown_tool"


@dataclass(frozen=True, slots=True)
class ToolMatcher:
    """Case-sensitive substring match against a tool's name (and optionally its id)."""

    tokens: tuple[str, ...]
    match_identifier: bool = False

    def matches(self, tool_name: str, tool_id: str) -> bool:
        if any(token in tool_name for token in self.tokens):
            return True
        return self.match_identifier and any(token in tool_id for token in self.tokens)


@dataclass(frozen=True, slots=True)
class PolicyRule:
    category: ToolCategory
    verdict: PolicyVerdict
    matcher: ToolMatcher


@dataclass(frozen=True, slots=True)
class PermissionRequest:
    """One capability the agent asks to exercise."""

    tool_id: str
    tool_name: str
    paths: tuple[str, ...] = ()
    option_ids: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class PermissionDecision:
    verdict: PolicyVerdict
    reason: DecisionReason
    option_id: str | None = None
    category: ToolCategory | None = None
    offending_path: str | None = None


DENY_RULE = PolicyRule(
    category=ToolCategory.DESTRUCTIVE,
    verdict=PolicyVerdict.DENY,
    matcher=ToolMatcher(
        tokens=(
            "Bash",
            "Write",
            "Edit",
            "NotebookEdit",
            "TodoWrite",
            "Task",
            "bash",
            "write",
            "edit",
        ),
        match_identifier=True,
    ),
)

READ_ONLY_RULE = PolicyRule(
    category=ToolCategory.READ_ONLY,
    verdict=PolicyVerdict.AUTO_APPROVE,
    matcher=ToolMatcher(tokens=("Read", "Grep", "Glob", "WebSearch", "Skill")),
)

FETCH_RULE = PolicyRule(
    category=ToolCategory.NETWORK_FETCH,
    verdict=PolicyVerdict.ESCALATE,
    matcher=ToolMatcher(tokens=("WebFetch",)),
)

DEFAULT_RULES: tuple[PolicyRule, ...] = (DENY_RULE, READ_ONLY_RULE, FETCH_RULE)

# Gemini CLI titles its tools differently; execution tools are still vetoed first.
GEMINI_RULES: tuple[PolicyRule, ...] = (
    PolicyRule(
        category=ToolCategory.DESTRUCTIVE,
        verdict=PolicyVerdict.DENY,
        matcher=ToolMatcher(
            tokens=(*DENY_RULE.matcher.tokens, "Shell", "shell", "Replace", "SaveMemory"),
            match_identifier=True,
        ),
    ),
    PolicyRule(
        category=ToolCategory.READ_ONLY,
        verdict=PolicyVerdict.AUTO_APPROVE,
        matcher=ToolMatcher(
            tokens=(
                *READ_ONLY_RULE.matcher.tokens,
                "FindFiles",
                "SearchText",
                "ReadFolder",
                "GoogleSearch",
            )
        ),
    ),
    FETCH_RULE,
)

PROVIDER_RULES: Mapping[ProviderKind, tuple[PolicyRule, ...]] = {
    ProviderKind.CLAUDE_CODE: DEFAULT_RULES,
    ProviderKind.GEMINI_CLI: GEMINI_RULES,
}


def rules_for_provider(provider: ProviderKind | None) -> tuple[PolicyRule, ...]:
    if provider is None:
        return DEFAULT_RULES
    return PROVIDER_RULES.get(provider, DEFAULT_RULES)


def _deny(
    reason: DecisionReason,
    category: ToolCategory | None = None,
    *,
    offending_path: str | None = None,
) -> PermissionDecision:
    return PermissionDecision(
        verdict=PolicyVerdict.DENY,
        reason=reason,
        category=category,
        offending_path=offending_path,
    )


def classify_permission(
    request: PermissionRequest,
    sandbox_root: str | os.PathLike[str],
    rules: Sequence[PolicyRule] = DEFAULT_RULES,
) -> PermissionDecision:
    """Classify a permission request as deny, auto-approve, or escalate.

    Only the sandbox check touches the filesystem; everything else is a pure
    function of the request and the rule table.
    """
    for rule in rules:
        if not rule.matcher.matches(request.tool_name, request.tool_id):
            continue

        if rule.verdict is PolicyVerdict.DENY:
            return _deny(DecisionReason.DENY_LISTED, rule.category)

        if rule.verdict is PolicyVerdict.AUTO_APPROVE:
            for path in request.paths:
                try:
                    resolve_within(sandbox_root, path)
                except SandboxViolation as exc:
                    log.warning(
                        f"[policy] {request.tool_name!r} denied: {exc.path} is outside "
                        f"the notes directory ({exc.reason})"
                    )
                    return _deny(
                        DecisionReason.OUTSIDE_SANDBOX, rule.category, offending_path=path
                    )
            if not request.option_ids:
                return _deny(DecisionReason.NO_OPTIONS, rule.category)
            return PermissionDecision(
                verdict=PolicyVerdict.AUTO_APPROVE,
                reason=DecisionReason.READ_ONLY_IN_SANDBOX,
                option_id=request.option_ids[0],
                category=rule.category,
            )

        if not request.option_ids:
            return _deny(DecisionReason.NO_OPTIONS, rule.category)
        return PermissionDecision(
            verdict=PolicyVerdict.ESCALATE,
            reason=DecisionReason.ASK_EVERY_TIME,
            category=rule.category,
        )

    return _deny(DecisionReason.UNKNOWN_TOOL)


__all__ = [
    "DEFAULT_RULES",
    "DecisionReason",
    "PermissionDecision",
    "PermissionRequest",
    "PolicyRule",
    "PolicyVerdict",
    "ToolCategory",
    "ToolMatcher",
    "classify_permission",
    "rules_for_provider",
]
