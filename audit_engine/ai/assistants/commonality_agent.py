"""
Audit Orchestration Engine
Commonality Agent: bounded ReAct loop.

Each step:
    1. Thought  — what to investigate next (generic sentence on failure)
    2. Action   — one ActionKind; unusable output selects COMPLETE
    3. Observe  — deterministic handler merges a namespaced partial result
                  into the run context and says whether to stop
Every step is appended to the trace. The loop stops on COMPLETE, after
``max_iterations`` steps, or once the wall-clock budget is spent (checked
between steps). A final synthesis call condenses the context; on failure
the study result is empty.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from audit_engine.ai.schemas import ActionKind, CommonalitySynthesis, ReActAction
from audit_engine.ai.structured import try_parse_structured

logger = logging.getLogger(__name__)

FALLBACK_THOUGHT = "Analyzing available data for patterns..."


@dataclass
class Observation:
    summary: str
    data: dict[str, list] = field(default_factory=dict)
    complete: bool = False


@dataclass
class StudyRun:
    """Outcome of one agent run, ready to persist as a study."""

    trace: list[dict]
    stop_reason: str
    context: dict[str, Any]
    synthesis: CommonalitySynthesis


# ── Action handlers ──────────────────────────────────────────────────────────
# Deterministic, no inference calls. Each returns the namespaced slice of
# context it contributes.

def _analyze_defects(action: ReActAction, context: dict) -> Observation:
    return Observation("Analyzed defect patterns", {"patterns": []})


def _compare_suppliers(action: ReActAction, context: dict) -> Observation:
    return Observation("Compared supplier performance", {"supplierInsights": []})


def _check_process(action: ReActAction, context: dict) -> Observation:
    return Observation("Analyzed process variations", {"processFindings": []})


def _find_root_cause(action: ReActAction, context: dict) -> Observation:
    return Observation("Identified potential root causes", {"rootCauses": []})


def _complete(action: ReActAction, context: dict) -> Observation:
    return Observation("Analysis complete", {}, complete=True)


ACTION_HANDLERS: dict[ActionKind, Callable[[ReActAction, dict], Observation]] = {
    ActionKind.ANALYZE_DEFECTS: _analyze_defects,
    ActionKind.COMPARE_SUPPLIERS: _compare_suppliers,
    ActionKind.CHECK_PROCESS: _check_process,
    ActionKind.FIND_ROOT_CAUSE: _find_root_cause,
    ActionKind.COMPLETE: _complete,
}

_unhandled = set(ActionKind) - set(ACTION_HANDLERS)
if _unhandled:
    raise RuntimeError(f"ActionKind members without a handler: {sorted(k.value for k in _unhandled)}")


def execute_action(action: ReActAction, context: dict) -> Observation:
    """Dispatch one action and merge its result into ``context``."""
    observation = ACTION_HANDLERS[action.type](action, context)
    for key, values in observation.data.items():
        context[key] = list(context.get(key, [])) + list(values)
    return observation


class CommonalityAgent:
    """Runs one commonality study investigation."""

    def __init__(self, gateway=None, prompt_registry=None, *, clock: Callable[[], float] = time.monotonic):
        self.gateway = gateway
        self.prompt_registry = prompt_registry
        self._clock = clock

    def run(
        self,
        *,
        study_type: str,
        filters: dict | None,
        organization_id: str,
        user_id: str,
        max_iterations: int = 5,
        wall_clock_seconds: float = 120,
    ) -> StudyRun:
        context = {
            "studyType": study_type,
            "filters": filters or {},
            "findings": [],
            "patterns": [],
        }
        trace: list[dict] = []
        stop_reason = "max_iterations"
        started = self._clock()

        for step in range(1, max_iterations + 1):
            if step > 1 and self._clock() - started >= wall_clock_seconds:
                stop_reason = "time_budget"
                logger.info("Commonality run stopped at step %d: wall-clock budget spent", step - 1,
                            extra={"organization_id": organization_id})
                break

            thought = self._think(context, step, organization_id, user_id)
            action = self._select_action(thought, context, step, organization_id, user_id)
            observation = execute_action(action, context)
            context["findings"] = context["findings"] + [{
                "step": step,
                "action": action.type.value,
                "observation": observation.summary,
            }]

            trace.append({
                "step": step,
                "thought": thought,
                "action": action.description or action.type.value,
                "action_type": action.type.value,
                "observation": observation.summary,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            })

            if observation.complete:
                stop_reason = "complete"
                break

        synthesis = self._synthesize(context, organization_id, user_id)
        return StudyRun(trace=trace, stop_reason=stop_reason, context=context, synthesis=synthesis)

    # ── Inference steps ───────────────────────────────────────────────────

    def _chat(self, messages, purpose, organization_id, user_id) -> str | None:
        try:
            result = self.gateway.chat(
                messages, purpose=purpose, user=user_id,
                organization_id=organization_id, max_retries=1,
            )
        except Exception as e:
            logger.warning("%s unavailable: %s", purpose, e,
                           extra={"organization_id": organization_id, "purpose": purpose})
            return None
        return (result.get("content") or "").strip() or None

    def _think(self, context, step, organization_id, user_id) -> str:
        messages = self.prompt_registry.render(
            "react_thought",
            step=step,
            study_type=context["studyType"],
            filters=json.dumps(context["filters"], default=str),
            findings=json.dumps(context["findings"], default=str),
            patterns=json.dumps(context["patterns"], default=str),
        )
        return self._chat(messages, "react_thought", organization_id, user_id) or FALLBACK_THOUGHT

    def _select_action(self, thought, context, step, organization_id, user_id) -> ReActAction:
        messages = self.prompt_registry.render(
            "react_action",
            step=step,
            thought=thought,
            study_type=context["studyType"],
            findings=json.dumps(context["findings"], default=str),
        )
        content = self._chat(messages, "react_action", organization_id, user_id)
        return try_parse_structured(content, ReActAction, ReActAction.complete())

    def _synthesize(self, context, organization_id, user_id) -> CommonalitySynthesis:
        messages = self.prompt_registry.render(
            "commonality_synthesis",
            study_type=context["studyType"],
            filters=json.dumps(context["filters"], default=str),
            context=json.dumps(context, indent=2, default=str),
        )
        content = self._chat(messages, "commonality_synthesis", organization_id, user_id)
        return try_parse_structured(content, CommonalitySynthesis, CommonalitySynthesis())
