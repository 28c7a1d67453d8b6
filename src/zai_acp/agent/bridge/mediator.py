"""Permission decisions for engine tool requests.

The engine asks before every gated tool call. Depending on the session's
permission mode the request is approved locally or forwarded to the ACP host
as a `session/request_permission` round trip. Leaving planning mode is always
a host round trip with its own option set.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Union

from acp.schema import PermissionOption
from claude_agent_sdk import PermissionResultAllow, PermissionResultDeny
from claude_agent_sdk.types import PermissionRuleValue, PermissionUpdate

from zai_acp.agent.bridge.tool_info import EXIT_PLAN_TOOL_NAME, is_edit_tool
from zai_acp.session_modes import PermissionMode

EXIT_PLAN_REJECTED_MESSAGE = "User rejected request to exit plan mode."
TOOL_REFUSED_MESSAGE = "User refused permission to run tool"

EXIT_PLAN_OPTIONS: tuple[PermissionOption, ...] = (
    PermissionOption(option_id=PermissionMode.ACCEPT_EDITS.value, name="Yes, and auto-accept edits", kind="allow_always"),
    PermissionOption(option_id=PermissionMode.ASK.value, name="Yes, and manually approve edits", kind="allow_once"),
    PermissionOption(option_id=PermissionMode.PLAN.value, name="No, keep planning", kind="reject_once"),
)
TOOL_OPTIONS: tuple[PermissionOption, ...] = (
    PermissionOption(option_id="allow_always", name="Always Allow", kind="allow_always"),
    PermissionOption(option_id="allow", name="Allow", kind="allow_once"),
    PermissionOption(option_id="reject", name="Reject", kind="reject_once"),
)

_EXIT_PLAN_TARGETS = {PermissionMode.ACCEPT_EDITS.value, PermissionMode.ASK.value}
_TOOL_ALLOW_IDS = {"allow", "allow_always"}

PermissionResult = Union[PermissionResultAllow, PermissionResultDeny]


@dataclass(frozen=True)
class AutoAllow:
    updated_permissions: List[PermissionUpdate] = field(default_factory=list)


@dataclass(frozen=True)
class AskHost:
    options: Sequence[PermissionOption] = TOOL_OPTIONS


@dataclass(frozen=True)
class ExitPlanRequest:
    options: Sequence[PermissionOption] = EXIT_PLAN_OPTIONS


Decision = Union[AutoAllow, AskHost, ExitPlanRequest]


def session_rule(tool_name: str) -> PermissionUpdate:
    return PermissionUpdate(
        type="addRules",
        rules=[PermissionRuleValue(tool_name=tool_name)],
        behavior="allow",
        destination="session",
    )


def set_mode_update(mode_id: str) -> PermissionUpdate:
    return PermissionUpdate(type="setMode", mode=mode_id, destination="session")


def _updates(suggestions: Sequence[PermissionUpdate] | None, default: PermissionUpdate) -> List[PermissionUpdate]:
    return list(suggestions) if suggestions else [default]


def decide(
    mode: PermissionMode | str,
    tool_name: str,
    tool_input: Dict[str, Any] | None = None,
    suggestions: Sequence[PermissionUpdate] | None = None,
) -> Decision:
    """Classify a tool request; pure apart from the options it returns."""
    if tool_name == EXIT_PLAN_TOOL_NAME:
        return ExitPlanRequest()
    mode_value = mode.value if isinstance(mode, PermissionMode) else str(mode)
    if mode_value == PermissionMode.BYPASS.value or (
        mode_value == PermissionMode.ACCEPT_EDITS.value and is_edit_tool(tool_name)
    ):
        return AutoAllow(updated_permissions=_updates(suggestions, session_rule(tool_name)))
    return AskHost()


def selected_option(outcome: Any) -> str | None:
    """Return the chosen option id, or None for a cancelled/absent outcome."""
    if outcome is None:
        return None
    inner = getattr(outcome, "outcome", None)
    if not isinstance(inner, str):
        # A RequestPermissionResponse wraps the outcome union.
        outcome = inner
        inner = getattr(outcome, "outcome", None)
    if inner != "selected":
        return None
    option_id = getattr(outcome, "option_id", None)
    return str(option_id) if option_id else None


def auto_allow(decision: AutoAllow, tool_input: Dict[str, Any] | None) -> PermissionResultAllow:
    return PermissionResultAllow(
        updated_input=tool_input or {},
        updated_permissions=list(decision.updated_permissions),
    )


def exit_plan_target(outcome: Any) -> str | None:
    """Mode id the session moves to when the host accepts leaving planning mode."""
    option_id = selected_option(outcome)
    return option_id if option_id in _EXIT_PLAN_TARGETS else None


def resolve_exit_plan(
    outcome: Any,
    tool_input: Dict[str, Any] | None,
    suggestions: Sequence[PermissionUpdate] | None = None,
) -> PermissionResult:
    target = exit_plan_target(outcome)
    if target is None:
        return PermissionResultDeny(message=EXIT_PLAN_REJECTED_MESSAGE, interrupt=True)
    return PermissionResultAllow(
        updated_input=tool_input or {},
        updated_permissions=_updates(suggestions, set_mode_update(target)),
    )


def resolve_tool(
    outcome: Any,
    tool_name: str,
    tool_input: Dict[str, Any] | None,
    suggestions: Sequence[PermissionUpdate] | None = None,
) -> PermissionResult:
    option_id = selected_option(outcome)
    if option_id not in _TOOL_ALLOW_IDS:
        return PermissionResultDeny(message=TOOL_REFUSED_MESSAGE, interrupt=True)
    if option_id == "allow_always":
        return PermissionResultAllow(
            updated_input=tool_input or {},
            updated_permissions=_updates(suggestions, session_rule(tool_name)),
        )
    return PermissionResultAllow(updated_input=tool_input or {})


def cancelled_result() -> PermissionResultDeny:
    return PermissionResultDeny(message=TOOL_REFUSED_MESSAGE, interrupt=True)
