"""Shared building blocks for the step sequencer and research strategies.

Provides:
- SequencerAction: the unit of work chosen from persisted run state
- StepOutcome / StepResult: what a unit of work commits and reports
- Prompt and context helpers (resources, prompt overrides, dedup summary)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from asip.contracts.schemas import ModelTier, Resource, ResourceType, Run
from asip.errors import ResourceNotFoundError
from asip.prompts.defaults import DEFAULT_PROMPTS, NO_PREVIOUS_HYPOTHESES, format_prompt
from asip.store.storage import Storage

STOPPED_MESSAGE = "Pipeline stopped by user"
MISSING_CREDENTIALS_MESSAGE = (
    "Missing required API keys: set GEMINI_API_KEY (or GOOGLE_API_KEY) before running the pipeline"
)

STEP_TIERS = {
    3: ModelTier.PRO,
    4: ModelTier.PRO,
    5: ModelTier.FLASH,
}


class SequencerAction(str, Enum):
    """Units of work the sequencer can perform."""

    BEGIN = "begin"
    START_RESEARCH = "start_research"
    POLL_RESEARCH = "poll_research"
    VALIDATE_RESEARCH = "validate_research"
    STEP3 = "step3"
    STEP4 = "step4"
    STEP5 = "step5"
    FINALIZE_LOOP = "finalize_loop"
    FAN_OUT_START = "fan_out_start"
    FAN_OUT_POLL = "fan_out_poll"
    FAN_OUT_EVALUATE = "fan_out_evaluate"
    FAN_OUT_COLLECT = "fan_out_collect"
    IDLE = "idle"  # Nothing to do in the current status
    LOCKED = "locked"  # Another invocation holds the run


@dataclass
class StepOutcome:
    """Run-row updates produced by one unit of work, committed by the sequencer."""

    updates: dict[str, Any] = field(default_factory=dict)
    wait_seconds: float = 0.0


@dataclass
class StepResult:
    """What execute_next reports back to its caller."""

    action: SequencerAction
    has_more: bool = True
    wait_seconds: float = 0.0


def progress_with(run: Run, **changes: Any) -> dict[str, Any]:
    """Copy of run.progress_info without the lease, with changes applied.

    A change whose value is None removes the key.
    """
    progress = {k: v for k, v in run.progress_info.items() if k != "lease"}
    for key, value in changes.items():
        if value is None:
            progress.pop(key, None)
        else:
            progress[key] = value
    return progress


# =============================================================================
# Context Helpers
# =============================================================================


def load_resources(storage: Storage, run: Run) -> tuple[Resource, Resource]:
    """Return (target_spec, technical_assets) for a run.

    Raises:
        ResourceNotFoundError: either resource is missing or has the wrong type
    """
    target = storage.get_resource(run.target_spec_id)
    if target is None or target.type != ResourceType.TARGET_SPEC:
        raise ResourceNotFoundError("Target specification", run.target_spec_id)
    assets = storage.get_resource(run.technical_assets_id)
    if assets is None or assets.type != ResourceType.TECHNICAL_ASSETS:
        raise ResourceNotFoundError("Technical assets", run.technical_assets_id)
    return target, assets


def resolve_prompt(storage: Storage, step: int) -> str:
    """Active PromptVersion for the step, else the built-in default."""
    active = storage.get_active_prompt(step)
    if active is not None:
        return active.content
    return DEFAULT_PROMPTS[step]


def previous_hypotheses_summary(storage: Storage, run: Run) -> str:
    """Summarize earlier hypotheses of the project so research avoids duplicates."""
    target_ids = None
    asset_ids = None
    if run.existing_filter and run.existing_filter.enabled:
        target_ids = run.existing_filter.target_spec_ids or None
        asset_ids = run.existing_filter.technical_assets_ids or None

    hypotheses = storage.list_hypotheses(
        run.project_id, target_spec_ids=target_ids, technical_assets_ids=asset_ids
    )
    if not hypotheses:
        return NO_PREVIOUS_HYPOTHESES

    lines = []
    for i, h in enumerate(hypotheses, start=1):
        lines.append(
            f"{i}. [{h.title or 'Untitled'}]\n"
            f"   Industry: {h.industry or 'unknown'} / Field: {h.field or 'unknown'}\n"
            f"   Summary: {h.business_summary or 'no summary'}\n"
            f"   Verdicts: {h.scientific_judgment or 'not evaluated'} / "
            f"{h.strategic_judgment or 'not evaluated'}"
        )
    return "\n\n".join(lines)


def build_step_prompt(
    storage: Storage,
    step: int,
    target: Resource,
    assets: Resource,
    hypothesis_count: int,
    outputs: dict[int, str | None],
) -> str:
    """Fill the step template with resources and accumulated step outputs."""
    return format_prompt(
        resolve_prompt(storage, step),
        HYPOTHESIS_COUNT=hypothesis_count,
        TARGET_SPEC=target.content,
        TECHNICAL_ASSETS=assets.content,
        STEP2_OUTPUT=outputs.get(2) or "",
        STEP3_OUTPUT=outputs.get(3) or "",
        STEP4_OUTPUT=outputs.get(4) or "",
    )
