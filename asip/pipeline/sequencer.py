"""Step sequencer: the state machine driving a run.

Each invocation of execute_next:
1. Reads the run and its research items and derives the next unit of work
   purely from that persisted state (next_action).
2. Claims the run with a conditional update on its cursor
   (status / current_step / current_loop / updated_at) that records a lease.
   A second invocation reading the same row fails the claim or sees the
   lease and backs off.
3. Performs the unit of work and commits its updates, again conditioned on
   the claimed cursor.
4. Consults pause/stop signals only after that commit (checkpoint).

Any exception from a unit of work is logged and persisted onto the run as
error_message with status error. Partial outputs and inserted hypotheses
are kept.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime
from typing import Any

from asip.contracts.schemas import (
    PipelineConfig,
    ResearchItem,
    ResearchStrategyName,
    Run,
    RunStatus,
)
from asip.errors import (
    ConcurrentRunUpdateError,
    ConfigurationError,
    ContentGenerationError,
    RunNotFoundError,
    get_error_message,
)
from asip.genai.client import GenerativeClient
from asip.output.tables import parse_delimited_table, rows_to_hypotheses
from asip.pipeline.control import ControlSignalRegistry, control_signals
from asip.pipeline.steps import (
    MISSING_CREDENTIALS_MESSAGE,
    STEP_TIERS,
    STOPPED_MESSAGE,
    SequencerAction,
    StepOutcome,
    StepResult,
    build_step_prompt,
    load_resources,
    progress_with,
)
from asip.pipeline.strategies import ResearchStrategy, build_strategy
from asip.store.storage import Storage
from asip.verify.extraction import HypothesisExtractor

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 900.0


class StepSequencer:
    """Computes and executes the next unit of work for a run."""

    def __init__(
        self,
        storage: Storage,
        client: GenerativeClient,
        config: PipelineConfig,
        signals: ControlSignalRegistry | None = None,
        lease_seconds: float = DEFAULT_LEASE_SECONDS,
    ):
        self.storage = storage
        self.client = client
        self.config = config
        self.signals = signals or control_signals
        self.lease_seconds = lease_seconds
        self.extractor = HypothesisExtractor(client)
        self._strategies: dict[ResearchStrategyName, ResearchStrategy] = {
            name: build_strategy(name, storage, client, self.extractor, config)
            for name in ResearchStrategyName
        }

    def strategy_for(self, run: Run) -> ResearchStrategy:
        return self._strategies[run.strategy]

    # =========================================================================
    # Decision
    # =========================================================================

    def next_action(self, run: Run, items: list[ResearchItem]) -> SequencerAction:
        """Derive the next unit of work from persisted state only."""
        if run.status == RunStatus.PENDING:
            return SequencerAction.BEGIN
        if run.status != RunStatus.RUNNING:
            return SequencerAction.IDLE

        if run.current_step == 2:
            return self.strategy_for(run).next_action(run, items)
        if run.current_step == 3:
            return SequencerAction.STEP3
        if run.current_step == 4:
            return SequencerAction.STEP4
        if run.progress_info.get("step5_loop") == run.current_loop:
            return SequencerAction.FINALIZE_LOOP
        return SequencerAction.STEP5

    # =========================================================================
    # Execution
    # =========================================================================

    async def execute_next(self, run_id: str) -> StepResult:
        """Perform one unit of work and checkpoint."""
        run = self._get_run(run_id)
        items = self.storage.list_research_items(run.id, run.current_loop)
        action = self.next_action(run, items)
        if action == SequencerAction.IDLE:
            return StepResult(action, has_more=False)

        lease = run.progress_info.get("lease")
        if lease and float(lease.get("expires_at", 0)) > time.time():
            logger.info("[Run %s] Held by another invocation; yielding", run.id)
            return StepResult(SequencerAction.LOCKED, has_more=False)

        try:
            claimed = self._claim(run, action)
        except ConcurrentRunUpdateError:
            logger.info("[Run %s] Lost claim for %s; yielding", run.id, action.value)
            return StepResult(SequencerAction.LOCKED, has_more=False)

        logger.info(
            "[Run %s] Loop %d/%d step %d: %s",
            run.id,
            claimed.current_loop,
            claimed.loop_count,
            claimed.current_step,
            action.value,
        )
        started = time.monotonic()
        try:
            outcome = await self._dispatch(action, claimed)
            committed = self._commit(claimed, outcome.updates)
        except ConcurrentRunUpdateError as e:
            logger.warning("[Run %s] %s", run.id, e.message)
            return StepResult(SequencerAction.LOCKED, has_more=False)
        except Exception as e:
            logger.exception("[Run %s] %s failed", run.id, action.value)
            self._fail(claimed, e)
            return StepResult(action, has_more=False)

        logger.debug("[Run %s] %s took %.1fs", run.id, action.value, time.monotonic() - started)
        return self._checkpoint(committed, action, outcome.wait_seconds)

    async def drive(self, run_id: str, budget_seconds: float | None = None) -> Run:
        """Execute units of work until the run leaves running or the budget runs out.

        A run that exhausts the budget stays running; a later drive (or an
        external nudge) continues from the persisted state.
        """
        deadline = None if budget_seconds is None else time.monotonic() + budget_seconds
        while True:
            result = await self.execute_next(run_id)
            if not result.has_more:
                break
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                if result.wait_seconds:
                    await asyncio.sleep(min(result.wait_seconds, remaining))
            elif result.wait_seconds:
                await asyncio.sleep(result.wait_seconds)
        return self._get_run(run_id)

    # =========================================================================
    # Claim / commit / checkpoint
    # =========================================================================

    @staticmethod
    def _cursor(run: Run) -> dict[str, Any]:
        return {
            "status": run.status,
            "current_step": run.current_step,
            "current_loop": run.current_loop,
            "updated_at": run.updated_at,
        }

    def _claim(self, run: Run, action: SequencerAction) -> Run:
        lease = {"token": uuid.uuid4().hex, "expires_at": time.time() + self.lease_seconds}
        return self.storage.update_run(
            run.id,
            {"progress_info": {**progress_with(run, action=action.value), "lease": lease}},
            expect=self._cursor(run),
        )

    def _commit(self, claimed: Run, updates: dict[str, Any]) -> Run:
        updates = dict(updates)
        if "progress_info" not in updates:
            updates["progress_info"] = progress_with(claimed)
        else:
            updates["progress_info"] = {
                k: v for k, v in updates["progress_info"].items() if k != "lease"
            }
        return self.storage.update_run(claimed.id, updates, expect=self._cursor(claimed))

    def _fail(self, run: Run, error: BaseException) -> None:
        try:
            self.storage.update_run(
                run.id,
                {
                    "status": RunStatus.ERROR,
                    "error_message": get_error_message(error),
                    "progress_info": progress_with(run, phase="error"),
                },
            )
        except Exception:
            logger.exception("[Run %s] Could not persist failure", run.id)
        self.signals.clear_control_requests(run.id)

    def _checkpoint(self, run: Run, action: SequencerAction, wait_seconds: float) -> StepResult:
        if run.status != RunStatus.RUNNING:
            self.signals.clear_control_requests(run.id)
            return StepResult(action, has_more=False)

        if self.signals.is_stop_requested(run.id):
            logger.info("[Run %s] Stop requested; stopping", run.id)
            self.storage.update_run(
                run.id,
                {
                    "status": RunStatus.ERROR,
                    "error_message": STOPPED_MESSAGE,
                    "progress_info": progress_with(run, phase="stopped"),
                },
                expect=self._cursor(run),
            )
            self.signals.clear_control_requests(run.id)
            return StepResult(action, has_more=False)

        if self.signals.is_pause_requested(run.id):
            logger.info(
                "[Run %s] Pausing before loop %d step %d",
                run.id,
                run.current_loop,
                run.current_step,
            )
            self.storage.update_run(
                run.id,
                {"status": RunStatus.PAUSED, "progress_info": progress_with(run, phase="paused")},
                expect=self._cursor(run),
            )
            self.signals.clear_control_requests(run.id)
            return StepResult(action, has_more=False)

        return StepResult(action, has_more=True, wait_seconds=wait_seconds)

    # =========================================================================
    # Units of work
    # =========================================================================

    async def _dispatch(self, action: SequencerAction, run: Run) -> StepOutcome:
        if action == SequencerAction.BEGIN:
            return self._begin(run)
        if action in (SequencerAction.STEP3, SequencerAction.STEP4, SequencerAction.STEP5):
            return await self._run_step(run, run.current_step)
        if action == SequencerAction.FINALIZE_LOOP:
            return self._finalize_loop(run)
        return await self.strategy_for(run).execute(action, run)

    def _begin(self, run: Run) -> StepOutcome:
        if not self.config.has_credentials:
            raise ConfigurationError(MISSING_CREDENTIALS_MESSAGE)
        load_resources(self.storage, run)
        return StepOutcome(
            updates={
                "status": RunStatus.RUNNING,
                "error_message": None,
                "progress_info": progress_with(
                    run, phase="started", started_at=datetime.now().isoformat()
                ),
            }
        )

    async def _run_step(self, run: Run, step: int) -> StepOutcome:
        target, assets = load_resources(self.storage, run)
        outputs = {2: run.step2_output, 3: run.step3_output, 4: run.step4_output}
        prompt = build_step_prompt(
            self.storage, step, target, assets, run.hypothesis_count, outputs
        )
        output = await self.client.complete_prompt(prompt, STEP_TIERS[step])
        logger.info("[Run %s] Step %d produced %d chars", run.id, step, len(output))

        timings = dict(run.progress_info.get("step_timings") or {})
        timings[f"loop{run.current_loop}_step{step}"] = datetime.now().isoformat()
        updates: dict[str, Any] = {f"step{step}_output": output}
        if step < 5:
            updates["current_step"] = step + 1
            updates["progress_info"] = progress_with(
                run, phase=f"step{step + 1}", step_timings=timings
            )
        else:
            updates["progress_info"] = progress_with(
                run, phase="finalizing", step5_loop=run.current_loop, step_timings=timings
            )
        return StepOutcome(updates=updates)

    def _finalize_loop(self, run: Run) -> StepOutcome:
        rows = [row for row in parse_delimited_table(run.step5_output or "") if any(row.values())]
        if not rows:
            raise ContentGenerationError("Integration output contained no table rows")

        if self.storage.has_loop_hypotheses(run.id, run.current_loop):
            # Saved before a crash cut off the cursor commit
            logger.info(
                "[Run %s] Loop %d hypotheses already saved", run.id, run.current_loop
            )
        else:
            start = self.storage.get_next_hypothesis_number(run.project_id)
            hypotheses = rows_to_hypotheses(
                rows,
                run.project_id,
                run.id,
                start,
                target_spec_id=run.target_spec_id,
                technical_assets_id=run.technical_assets_id,
                loop=run.current_loop,
            )
            self.storage.create_hypotheses(hypotheses)
            logger.info(
                "[Run %s] Loop %d saved hypotheses %d-%d",
                run.id,
                run.current_loop,
                start,
                start + len(hypotheses) - 1,
            )

        updates: dict[str, Any] = {"integrated_list": rows}
        if run.is_last_loop:
            updates.update(
                {
                    "status": RunStatus.COMPLETED,
                    "completed_at": datetime.now(),
                    "progress_info": progress_with(run, phase="completed", step5_loop=None),
                }
            )
        else:
            # step5 output is kept for reference; the rest is per-loop scratch
            updates.update(
                {
                    "step2_output": None,
                    "step3_output": None,
                    "step4_output": None,
                    "current_step": 2,
                    "current_loop": run.current_loop + 1,
                    "progress_info": progress_with(
                        run, phase="step2", step5_loop=None, research=None
                    ),
                }
            )
        return StepOutcome(updates=updates)

    def _get_run(self, run_id: str) -> Run:
        run = self.storage.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run
