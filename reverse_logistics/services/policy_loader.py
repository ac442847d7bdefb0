# ==== POLICY LOADER SERVICE ==== #

"""
Policy loader for NDR resolution workflows.

Workflows are configuration: each canonical NDR type maps to a resolution
window, an auto-RTO flag and an ordered list of actions. Definitions are read
from YAML once and cached; a hardcoded fallback keeps the engine running when
the file is missing.
"""

import functools
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import yaml

from reverse_logistics.business.errors import DomainValidationError
from reverse_logistics.business.ndr_types import NDRActionType, NDRType
from reverse_logistics.observability.tracing import get_tracer
from reverse_logistics.settings import settings


tracer = get_tracer(__name__)

DEFAULT_WORKFLOW_PATH = os.path.join(
    os.path.dirname(__file__),
    "..",
    "business",
    "policies",
    "ndr_workflows.yaml"
)


# ==== WORKFLOW DEFINITIONS ==== #


@dataclass(frozen=True)
class WorkflowAction:
    type: NDRActionType
    sequence: int
    delay_minutes: int = 0
    auto_execute: bool = True
    template: Optional[str] = None


@dataclass(frozen=True)
class WorkflowDefinition:
    """Resolution workflow selected by an NDR type."""

    ndr_type: NDRType
    max_resolution_hours: int
    auto_trigger_rto: bool = True
    actions: Tuple[WorkflowAction, ...] = field(default_factory=tuple)

    def action_at(self, index: int) -> Optional[WorkflowAction]:
        """Action at cursor ``index`` (0-based, sequence order)."""
        if 0 <= index < len(self.actions):
            return self.actions[index]
        return None


def _parse_action(raw: Dict[str, Any], ndr_type: str) -> WorkflowAction:
    try:
        return WorkflowAction(
            type=NDRActionType(raw["type"]),
            sequence=int(raw["sequence"]),
            delay_minutes=int(raw.get("delay_minutes", 0)),
            auto_execute=bool(raw.get("auto_execute", True)),
            template=raw.get("template"),
        )
    except (KeyError, ValueError) as e:
        raise DomainValidationError(
            f"Invalid action in workflow '{ndr_type}': {e}",
            code="INVALID_WORKFLOW_CONFIG",
        ) from e


def parse_workflows(config: Dict[str, Any]) -> Dict[NDRType, WorkflowDefinition]:
    """Build workflow definitions from a loaded YAML document.

    Args:
        config: Mapping with ``workflows`` and optional ``default_resolution_hours``

    Returns:
        Dict[NDRType, WorkflowDefinition]: One entry per configured type

    Raises:
        DomainValidationError: Unknown NDR type, action type or duplicate sequence
    """
    default_hours = int(config.get("default_resolution_hours", settings.NDR_DEFAULT_RESOLUTION_HOURS))
    workflows: Dict[NDRType, WorkflowDefinition] = {}

    for name, raw in (config.get("workflows") or {}).items():
        try:
            ndr_type = NDRType(name)
        except ValueError as e:
            raise DomainValidationError(
                f"Unknown NDR type '{name}' in workflow configuration",
                code="INVALID_WORKFLOW_CONFIG",
            ) from e

        actions = sorted(
            (_parse_action(action, name) for action in raw.get("actions") or []),
            key=lambda action: action.sequence,
        )
        sequences = [action.sequence for action in actions]
        if len(sequences) != len(set(sequences)):
            raise DomainValidationError(
                f"Duplicate action sequence in workflow '{name}'",
                code="INVALID_WORKFLOW_CONFIG",
            )

        workflows[ndr_type] = WorkflowDefinition(
            ndr_type=ndr_type,
            max_resolution_hours=int(raw.get("max_resolution_hours", default_hours)),
            auto_trigger_rto=bool(raw.get("auto_trigger_rto", True)),
            actions=tuple(actions),
        )

    return workflows


def _fallback_config() -> Dict[str, Any]:
    # Conservative defaults: one notification, short window, auto RTO
    return {
        "default_resolution_hours": settings.NDR_DEFAULT_RESOLUTION_HOURS,
        "workflows": {
            NDRType.OTHER.value: {
                "max_resolution_hours": settings.NDR_DEFAULT_RESOLUTION_HOURS,
                "auto_trigger_rto": True,
                "actions": [
                    {"type": "send_sms", "sequence": 1, "delay_minutes": 0,
                     "auto_execute": True, "template": "ndr_generic"},
                ],
            },
        },
    }


# ==== WORKFLOW LOADING ==== #


@functools.lru_cache(maxsize=8)
def load_workflows(path: Optional[str] = None) -> Dict[NDRType, WorkflowDefinition]:
    """
    Load and cache workflow definitions.

    Args:
        path: YAML file, defaults to ``NDR_WORKFLOW_FILE`` or the bundled policy

    Returns:
        Dict[NDRType, WorkflowDefinition]: Workflows keyed by NDR type
    """
    config_path = path or settings.NDR_WORKFLOW_FILE or DEFAULT_WORKFLOW_PATH

    with tracer.start_as_current_span("load_ndr_workflows") as span:
        span.set_attribute("config_path", config_path)

        try:
            with open(config_path, "r") as f:
                config = yaml.safe_load(f) or {}
            span.set_attribute("config_loaded", True)

        except FileNotFoundError:
            # Fallback to hardcoded defaults
            span.set_attribute("config_loaded", False)
            span.set_attribute("fallback_used", True)
            config = _fallback_config()

        return parse_workflows(config)


def get_workflow(ndr_type: NDRType | str, path: Optional[str] = None) -> WorkflowDefinition:
    """
    Workflow for an NDR type.

    Types without their own entry get the ``other`` workflow, or a bare
    definition with the default window when even that is missing.
    """
    ndr_type = NDRType(ndr_type)
    workflows = load_workflows(path)

    workflow = workflows.get(ndr_type) or workflows.get(NDRType.OTHER)
    if workflow is None:
        return WorkflowDefinition(
            ndr_type=ndr_type,
            max_resolution_hours=settings.NDR_DEFAULT_RESOLUTION_HOURS,
        )
    return workflow
