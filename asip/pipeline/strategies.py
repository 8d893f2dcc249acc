"""Research strategies for step 2.

Both strategies start with a breadth research interaction over the two
resources, validated by the bounded retry combinator. They differ in what
happens next:
- SharedResearchStrategy: the validated report is the step 2 output and the
  run moves on to step 3
- PerHypothesisResearchStrategy: one research item per validated hypothesis
  is researched in a bounded fan-out (at most max_concurrent open handles),
  then each item is evaluated through steps 3-5 on its own and the results
  are stitched back into the run at step 5

All decisions are derived from the persisted run and research items, never
from in-memory continuation state.
"""

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from asip.contracts.schemas import (
    ItemPhase,
    ItemStatus,
    ModelTier,
    PipelineConfig,
    ResearchItem,
    ResearchPoll,
    ResearchStatus,
    ResearchStrategyName,
    Run,
    ValidationResult,
)
from asip.errors import (
    ContentGenerationError,
    ResearchFailedError,
    ResearchTimeoutError,
    get_error_message,
)
from asip.genai.client import GenerativeClient
from asip.output.tables import merge_tables
from asip.pipeline.retry import validate_with_retry
from asip.pipeline.steps import (
    STEP_TIERS,
    SequencerAction,
    StepOutcome,
    build_step_prompt,
    load_resources,
    previous_hypotheses_summary,
    progress_with,
    resolve_prompt,
)
from asip.prompts.defaults import ITEM_RESEARCH_PROMPT, RETRY_PROMPT, format_prompt
from asip.store.storage import Storage
from asip.verify.extraction import HypothesisExtractor

logger = logging.getLogger(__name__)


class ResearchStrategy(ABC):
    """Decides and performs the research units of work for step 2."""

    name: ResearchStrategyName
    keeps_reference_store = False

    def __init__(
        self,
        storage: Storage,
        client: GenerativeClient,
        extractor: HypothesisExtractor,
        config: PipelineConfig,
    ):
        self.storage = storage
        self.client = client
        self.extractor = extractor
        self.config = config

    @abstractmethod
    def next_action(self, run: Run, items: list[ResearchItem]) -> SequencerAction:
        """Next research unit for a running run at step 2."""
        ...

    @abstractmethod
    async def execute(self, action: SequencerAction, run: Run) -> StepOutcome:
        ...

    def _breadth_action(self, run: Run) -> SequencerAction:
        research = run.progress_info.get("research") or {}
        if research.get("report") is not None:
            return SequencerAction.VALIDATE_RESEARCH
        if research.get("interaction_id"):
            return SequencerAction.POLL_RESEARCH
        return SequencerAction.START_RESEARCH

    # -------------------------------------------------------------------------
    # Breadth research
    # -------------------------------------------------------------------------

    async def start_research(self, run: Run) -> StepOutcome:
        target, assets = load_resources(self.storage, run)
        prompt = format_prompt(
            resolve_prompt(self.storage, 2),
            HYPOTHESIS_COUNT=run.hypothesis_count,
            TARGET_SPEC=target.content,
            TECHNICAL_ASSETS=assets.content,
            PREVIOUS_HYPOTHESES=previous_hypotheses_summary(self.storage, run),
        )

        label = f"asip-run-{run.id}-loop-{run.current_loop}"
        store_id = await self.client.create_reference_store(label)
        try:
            await self.client.attach_document(store_id, target.content, "target_specification")
            await self.client.attach_document(store_id, assets.content, "technical_assets")
            interaction_id = await self.client.start_research(prompt, [store_id])
        except Exception:
            await self.client.delete_reference_store(store_id)
            raise

        logger.info("[Run %s] Research started: %s", run.id, interaction_id)
        research = {
            "interaction_id": interaction_id,
            "store_ids": [store_id],
            "started_at": time.time(),
        }
        return StepOutcome(
            updates={
                "progress_info": progress_with(
                    run, phase="researching", research=research, detail="Deep research running"
                )
            },
            wait_seconds=self.config.research_poll_interval,
        )

    async def poll_research(self, run: Run) -> StepOutcome:
        research = dict(run.progress_info.get("research") or {})
        interaction_id = research["interaction_id"]
        try:
            poll = await self.client.poll_research(interaction_id)
        except Exception as e:
            # Transient poll failures count as still running; the ceiling still applies
            logger.warning("[Run %s] Research poll failed: %s", run.id, e)
            poll = ResearchPoll(status=ResearchStatus.IN_PROGRESS)

        if poll.status == ResearchStatus.COMPLETED:
            logger.info("[Run %s] Research completed (%d chars)", run.id, len(poll.result or ""))
            research["report"] = poll.result or ""
            if not self.keeps_reference_store:
                await self._delete_stores(research)
            return StepOutcome(
                updates={
                    "progress_info": progress_with(
                        run, phase="validating", research=research, detail="Validating research"
                    )
                }
            )

        if poll.status == ResearchStatus.FAILED:
            await self._delete_stores(research)
            raise ResearchFailedError(
                f"Deep research failed: {poll.error or 'no detail provided'}",
                details={"interaction_id": interaction_id},
            )

        elapsed = time.time() - float(research.get("started_at") or 0)
        if elapsed >= self.config.research_timeout:
            await self._delete_stores(research)
            raise ResearchTimeoutError(interaction_id, self.config.research_timeout)

        research["last_polled_at"] = time.time()
        return StepOutcome(
            updates={
                "progress_info": progress_with(
                    run,
                    research=research,
                    detail=f"Deep research running ({int(elapsed // 60)} min)",
                )
            },
            wait_seconds=self.config.research_poll_interval,
        )

    async def validate_research(self, run: Run) -> tuple[str, ValidationResult]:
        research = run.progress_info.get("research") or {}

        async def validate(report: str, expected: int) -> ValidationResult:
            return await self.extractor.extract_and_validate(report, expected, run.id)

        async def regenerate(missing: int, report: str) -> str:
            prompt = format_prompt(RETRY_PROMPT, MISSING_COUNT=missing, REPORT=report)
            return await self.client.complete_prompt(prompt, ModelTier.PRO, use_search=True)

        return await validate_with_retry(
            research.get("report") or "",
            run.hypothesis_count,
            validate,
            regenerate,
            max_retries=self.config.max_retries,
        )

    async def _delete_stores(self, research: dict[str, Any]) -> None:
        for store_id in research.get("store_ids") or []:
            await self.client.delete_reference_store(store_id)
        research["store_ids"] = []


class SharedResearchStrategy(ResearchStrategy):
    """One research call covering every hypothesis of the loop."""

    name = ResearchStrategyName.SHARED

    def next_action(self, run: Run, items: list[ResearchItem]) -> SequencerAction:
        return self._breadth_action(run)

    async def execute(self, action: SequencerAction, run: Run) -> StepOutcome:
        if action == SequencerAction.START_RESEARCH:
            return await self.start_research(run)
        if action == SequencerAction.POLL_RESEARCH:
            return await self.poll_research(run)
        if action == SequencerAction.VALIDATE_RESEARCH:
            report, result = await self.validate_research(run)
            return StepOutcome(
                updates={
                    "step2_output": report,
                    "validation_metadata": result.to_metadata(),
                    "current_step": 3,
                    "progress_info": progress_with(
                        run, phase="step3", research=None, detail="Research validated"
                    ),
                }
            )
        raise ValueError(f"Unsupported research action: {action}")


class PerHypothesisResearchStrategy(ResearchStrategy):
    """Bounded fan-out: deep research and evaluation per hypothesis."""

    name = ResearchStrategyName.PER_HYPOTHESIS
    keeps_reference_store = True

    def next_action(self, run: Run, items: list[ResearchItem]) -> SequencerAction:
        if not items:
            return self._breadth_action(run)

        phases = categorize_items(items)
        open_handles = len(phases[ItemPhase.POLLING])
        startable = phases[ItemPhase.PENDING] + phases[ItemPhase.STUCK]

        if startable and open_handles < self.config.max_concurrent:
            return SequencerAction.FAN_OUT_START
        if phases[ItemPhase.READY_FOR_EVAL] or phases[ItemPhase.IN_EVALUATION]:
            return SequencerAction.FAN_OUT_EVALUATE
        if open_handles:
            return SequencerAction.FAN_OUT_POLL
        return SequencerAction.FAN_OUT_COLLECT

    async def execute(self, action: SequencerAction, run: Run) -> StepOutcome:
        if action == SequencerAction.START_RESEARCH:
            return await self.start_research(run)
        if action == SequencerAction.POLL_RESEARCH:
            return await self.poll_research(run)
        if action == SequencerAction.VALIDATE_RESEARCH:
            return await self._create_items(run)
        if action == SequencerAction.FAN_OUT_START:
            return await self._start_items(run)
        if action == SequencerAction.FAN_OUT_POLL:
            return await self._poll_items(run)
        if action == SequencerAction.FAN_OUT_EVALUATE:
            return await self._evaluate_item(run)
        if action == SequencerAction.FAN_OUT_COLLECT:
            return await self._collect(run)
        raise ValueError(f"Unsupported research action: {action}")

    def _items(self, run: Run) -> list[ResearchItem]:
        return self.storage.list_research_items(run.id, run.current_loop)

    def _fan_out_progress(self, run: Run, detail: str) -> dict[str, Any]:
        counts = {phase.value: len(group) for phase, group in categorize_items(self._items(run)).items()}
        return progress_with(run, phase="fan_out", items=counts, detail=detail)

    async def _create_items(self, run: Run) -> StepOutcome:
        report, result = await self.validate_research(run)
        items = [
            ResearchItem(
                run_id=run.id,
                loop=run.current_loop,
                item_index=i,
                title=hypothesis.title or f"Hypothesis {i + 1}",
                brief=hypothesis.model_dump(),
            )
            for i, hypothesis in enumerate(result.extracted)
        ]
        self.storage.create_research_items(items)
        logger.info("[Run %s] Created %d research items", run.id, len(items))

        research = dict(run.progress_info.get("research") or {})
        research.pop("report", None)
        research.pop("interaction_id", None)
        return StepOutcome(
            updates={
                "step2_output": report,
                "validation_metadata": result.to_metadata(),
                "progress_info": progress_with(
                    run, phase="fan_out", research=research, detail=f"{len(items)} items queued"
                ),
            }
        )

    async def _start_items(self, run: Run) -> StepOutcome:
        items = self._items(run)
        phases = categorize_items(items)
        slots = self.config.max_concurrent - len(phases[ItemPhase.POLLING])
        candidates = (phases[ItemPhase.PENDING] + phases[ItemPhase.STUCK])[: max(slots, 0)]
        store_ids = (run.progress_info.get("research") or {}).get("store_ids") or []

        started = 0
        for item in candidates:
            prompt = format_prompt(
                ITEM_RESEARCH_PROMPT,
                TITLE=item.title,
                TRADEOFF=item.brief.get("tradeoff", ""),
                MECHANISM=item.brief.get("mechanism", ""),
                MOAT=item.brief.get("moat", ""),
            )
            # Marked before the call so a crash mid-start leaves a visible stuck item
            self.storage.update_research_item(
                item.id, {"status": ItemStatus.RESEARCHING, "interaction_id": None}
            )
            try:
                interaction_id = await self.client.start_research(prompt, store_ids)
            except Exception as e:
                logger.warning("[Run %s] Failed to start research for %s: %s", run.id, item.title, e)
                self.storage.update_research_item(
                    item.id,
                    {"status": ItemStatus.ERROR, "error_message": get_error_message(e)},
                )
                continue
            self.storage.update_research_item(
                item.id, {"interaction_id": interaction_id, "started_at": datetime.now()}
            )
            started += 1

        return StepOutcome(
            updates={"progress_info": self._fan_out_progress(run, f"Started {started} research items")}
        )

    async def _poll_items(self, run: Run) -> StepOutcome:
        changed = 0
        for item in categorize_items(self._items(run))[ItemPhase.POLLING]:
            try:
                poll = await self.client.poll_research(item.interaction_id)
            except Exception as e:
                logger.warning("[Run %s] Poll failed for %s, still running: %s", run.id, item.title, e)
                poll = ResearchPoll(status=ResearchStatus.IN_PROGRESS)

            if poll.status == ResearchStatus.COMPLETED:
                self.storage.update_research_item(
                    item.id, {"status": ItemStatus.RESEARCHED, "research_output": poll.result or ""}
                )
                changed += 1
            elif poll.status == ResearchStatus.FAILED:
                self.storage.update_research_item(
                    item.id,
                    {"status": ItemStatus.ERROR, "error_message": f"Deep research failed: {poll.error}"},
                )
                changed += 1
            elif item.started_at and (
                (datetime.now() - item.started_at).total_seconds() >= self.config.research_timeout
            ):
                self.storage.update_research_item(
                    item.id,
                    {"status": ItemStatus.ERROR, "error_message": "Deep research timed out"},
                )
                changed += 1

        return StepOutcome(
            updates={"progress_info": self._fan_out_progress(run, "Polling research items")},
            wait_seconds=0.0 if changed else self.config.research_poll_interval,
        )

    async def _evaluate_item(self, run: Run) -> StepOutcome:
        phases = categorize_items(self._items(run))
        item = (phases[ItemPhase.READY_FOR_EVAL] + phases[ItemPhase.IN_EVALUATION])[0]
        item = self.storage.update_research_item(item.id, {"status": ItemStatus.EVALUATING})
        target, assets = load_resources(self.storage, run)

        try:
            for step in (3, 4, 5):
                if getattr(item, f"step{step}_output") is not None:
                    continue
                outputs = {2: item.research_output, 3: item.step3_output, 4: item.step4_output}
                prompt = build_step_prompt(self.storage, step, target, assets, 1, outputs)
                output = await self.client.complete_prompt(prompt, STEP_TIERS[step])
                item = self.storage.update_research_item(item.id, {f"step{step}_output": output})
            self.storage.update_research_item(item.id, {"status": ItemStatus.COMPLETED})
        except Exception as e:
            logger.warning("[Run %s] Evaluation failed for %s: %s", run.id, item.title, e)
            self.storage.update_research_item(
                item.id, {"status": ItemStatus.ERROR, "error_message": get_error_message(e)}
            )

        return StepOutcome(
            updates={"progress_info": self._fan_out_progress(run, f"Evaluated {item.title}")}
        )

    async def _collect(self, run: Run) -> StepOutcome:
        items = self._items(run)
        done = [item for item in items if item.status == ItemStatus.COMPLETED]
        failed = [item for item in items if item.status == ItemStatus.ERROR]

        research = dict(run.progress_info.get("research") or {})
        await self._delete_stores(research)
        if not done:
            raise ContentGenerationError(
                "All per-hypothesis research items failed",
                details={"errors": [item.error_message for item in failed]},
            )

        def sections(attr: str) -> str:
            return "\n\n".join(f"## {item.title}\n{getattr(item, attr) or ''}" for item in done)

        metadata = run.validation_metadata.model_copy() if run.validation_metadata else None
        if metadata is not None:
            metadata.errors = metadata.errors + [
                f"{item.title}: {item.error_message}" for item in failed
            ]

        updates: dict[str, Any] = {
            "step2_output": (run.step2_output or "") + "\n\n---\n\n" + sections("research_output"),
            "step3_output": sections("step3_output"),
            "step4_output": sections("step4_output"),
            "step5_output": merge_tables([item.step5_output or "" for item in done]),
            "current_step": 5,
            "progress_info": progress_with(
                run,
                phase="step5",
                research=None,
                items=None,
                step5_loop=run.current_loop,
                detail=f"Collected {len(done)} of {len(items)} items",
            ),
        }
        if metadata is not None:
            updates["validation_metadata"] = metadata
        return StepOutcome(updates=updates)


def categorize_items(items: list[ResearchItem]) -> dict[ItemPhase, list[ResearchItem]]:
    """Group research items by their derived micro-state."""
    groups: dict[ItemPhase, list[ResearchItem]] = {phase: [] for phase in ItemPhase}
    for item in items:
        groups[item.phase].append(item)
    return groups


def build_strategy(
    name: ResearchStrategyName,
    storage: Storage,
    client: GenerativeClient,
    extractor: HypothesisExtractor,
    config: PipelineConfig,
) -> ResearchStrategy:
    strategies: dict[ResearchStrategyName, type[ResearchStrategy]] = {
        ResearchStrategyName.SHARED: SharedResearchStrategy,
        ResearchStrategyName.PER_HYPOTHESIS: PerHypothesisResearchStrategy,
    }
    return strategies[name](storage, client, extractor, config)
