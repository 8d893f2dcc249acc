"""Run lifecycle: creation, control commands and crash recovery.

Runs are executed by asyncio tasks tracked in running_tasks. A task drives
the sequencer until the run leaves running or the configured budget runs
out; a budget-limited run is continued by process_run (an external nudge).
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any

from asip.contracts.schemas import (
    ItemPhase,
    ItemStatus,
    PipelineConfig,
    ResourceType,
    Run,
    RunCreate,
    RunStatus,
)
from asip.errors import InvalidRunStateError, ResourceNotFoundError, RunNotFoundError
from asip.genai.client import GenerativeClient
from asip.pipeline.control import ControlSignalRegistry, control_signals
from asip.pipeline.sequencer import StepSequencer
from asip.pipeline.steps import MISSING_CREDENTIALS_MESSAGE, STOPPED_MESSAGE, progress_with
from asip.store.storage import SQLiteStorage, Storage

logger = logging.getLogger(__name__)

INTERRUPTED_RUNNING_MESSAGE = "Pipeline was interrupted by a server restart. Please run it again."
INTERRUPTED_PAUSED_MESSAGE = (
    "Paused pipeline was interrupted by a server restart. Please run it again."
)


class RunManager:
    """Creates runs and applies pause / resume / stop / recovery to them."""

    def __init__(
        self,
        storage: Storage,
        sequencer: StepSequencer,
        config: PipelineConfig,
        signals: ControlSignalRegistry | None = None,
    ):
        self.storage = storage
        self.sequencer = sequencer
        self.config = config
        self.signals = signals or control_signals
        self.running_tasks: dict[str, asyncio.Task] = {}

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    async def start_run(self, project_id: str, request: RunCreate) -> Run:
        """Validate inputs, create a pending run and schedule it.

        Raises:
            ResourceNotFoundError: unknown project or resource
        """
        if self.storage.get_project(project_id) is None:
            raise ResourceNotFoundError("Project", project_id)
        self._check_resource(project_id, request.target_spec_id, ResourceType.TARGET_SPEC)
        self._check_resource(
            project_id, request.technical_assets_id, ResourceType.TECHNICAL_ASSETS
        )

        run = Run(
            project_id=project_id,
            target_spec_id=request.target_spec_id,
            technical_assets_id=request.technical_assets_id,
            job_name=request.job_name,
            hypothesis_count=request.hypothesis_count,
            loop_count=request.loop_count,
            existing_filter=request.existing_filter,
            strategy=request.strategy or self.config.strategy,
        )

        if not self.config.has_credentials:
            run.status = RunStatus.ERROR
            run.error_message = MISSING_CREDENTIALS_MESSAGE
            self.storage.create_run(run)
            logger.warning("[Run %s] Not started: missing API credentials", run.id)
            return run

        self.storage.create_run(run)
        logger.info(
            "[Run %s] Created (%d hypotheses x %d loops, %s research)",
            run.id,
            run.hypothesis_count,
            run.loop_count,
            run.strategy.value,
        )
        self._schedule(run.id)
        return run

    def _check_resource(self, project_id: str, resource_id: str, expected: ResourceType) -> None:
        resource = self.storage.get_resource(resource_id)
        if resource is None or resource.project_id != project_id or resource.type != expected:
            raise ResourceNotFoundError(expected.value, resource_id)

    # -------------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------------

    def get_run(self, run_id: str) -> Run:
        run = self.storage.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def pause_run(self, run_id: str) -> Run:
        """Request a pause; the sequencer honors it at the next step boundary."""
        run = self._require_status(run_id, [RunStatus.RUNNING])
        self.signals.request_pause(run_id)
        logger.info("[Run %s] Pause requested", run_id)
        return run

    def resume_run(self, run_id: str) -> Run:
        """Resume a paused (or explicitly, an interrupted) run at its persisted cursor."""
        run = self._require_status(run_id, [RunStatus.PAUSED, RunStatus.INTERRUPTED])
        self.signals.clear_control_requests(run_id)

        progress = progress_with(run, phase="resumed")
        if run.status == RunStatus.INTERRUPTED:
            progress = self._discard_stale_handles(run, progress)

        run = self.storage.update_run(
            run_id,
            {
                "status": RunStatus.RUNNING,
                "error_message": None,
                "resume_count": run.resume_count + 1,
                "progress_info": progress,
            },
            expect={"status": run.status},
        )
        logger.info(
            "[Run %s] Resumed at loop %d step %d", run_id, run.current_loop, run.current_step
        )
        self._schedule(run_id)
        return run

    def _discard_stale_handles(self, run: Run, progress: dict[str, Any]) -> dict[str, Any]:
        # Handles opened before the restart have unknown state; start that research over
        research = dict(progress.get("research") or {})
        if research.get("interaction_id") and research.get("report") is None:
            research.pop("interaction_id")
            research.pop("started_at", None)
            progress["research"] = research

        for item in self.storage.list_research_items(run.id, run.current_loop):
            if item.phase in (ItemPhase.POLLING, ItemPhase.STUCK):
                self.storage.update_research_item(
                    item.id, {"status": ItemStatus.PENDING, "interaction_id": None}
                )
        return progress

    def stop_run(self, run_id: str) -> Run:
        """Request a stop. A paused run has no sequencer to observe it, so stop it here."""
        run = self._require_status(run_id, [RunStatus.RUNNING, RunStatus.PAUSED])
        self.signals.request_stop(run_id)
        if run.status == RunStatus.PAUSED:
            run = self.storage.update_run(
                run_id,
                {"status": RunStatus.ERROR, "error_message": STOPPED_MESSAGE},
                expect={"status": RunStatus.PAUSED},
            )
            self.signals.clear_control_requests(run_id)
        logger.info("[Run %s] Stop requested", run_id)
        return run

    async def process_run(self, run_id: str, budget_seconds: float | None = None) -> Run:
        """Continue a pending/running run within a time budget (external nudge)."""
        run = self.get_run(run_id)
        task = self.running_tasks.get(run_id)
        if run.status not in (RunStatus.PENDING, RunStatus.RUNNING) or (task and not task.done()):
            return run
        return await self.sequencer.drive(run_id, budget_seconds)

    async def process_stale_runs(
        self, older_than: float | None = None, budget_seconds: float | None = None
    ) -> list[dict[str, Any]]:
        """Nudge pending/running runs that have not been touched for older_than seconds.

        Called periodically (watchdog). A run whose task died before it began,
        or a budget-limited run nobody nudged, is continued here.
        """
        if older_than is None:
            older_than = self.config.stale_run_seconds
        cutoff = datetime.now() - timedelta(seconds=older_than)
        stale = [
            run
            for run in self.storage.get_runs_by_status([RunStatus.PENDING, RunStatus.RUNNING])
            if run.updated_at < cutoff
        ]
        logger.info("[Watchdog] Found %d stale run(s)", len(stale))

        results = []
        for run in stale:
            logger.info(
                "[Watchdog] Nudging run %s (status: %s, updated %s)",
                run.id,
                run.status.value,
                run.updated_at.isoformat(),
            )
            try:
                updated = await self.process_run(run.id, budget_seconds)
            except Exception as e:
                logger.error("[Watchdog] Failed to nudge run %s: %s", run.id, e)
                results.append(
                    {"run_id": run.id, "status": run.status.value, "resumed": False, "error": str(e)}
                )
                continue
            results.append({"run_id": run.id, "status": updated.status.value, "resumed": True})
        return results

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    def recover_interrupted_runs(self) -> list[Run]:
        """Reclassify runs a previous process left running or paused.

        Nothing is resumed automatically; the user decides whether to resume
        or re-run.
        """
        recovered = []
        for run in self.storage.get_runs_by_status([RunStatus.RUNNING, RunStatus.PAUSED]):
            message = (
                INTERRUPTED_RUNNING_MESSAGE
                if run.status == RunStatus.RUNNING
                else INTERRUPTED_PAUSED_MESSAGE
            )
            updated = self.storage.update_run(
                run.id,
                {
                    "status": RunStatus.INTERRUPTED,
                    "error_message": message,
                    "progress_info": progress_with(run, phase="interrupted"),
                },
            )
            logger.warning(
                "[Recovery] Run %s marked interrupted (was %s, step %d, loop %d)",
                run.id,
                run.status.value,
                run.current_step,
                run.current_loop,
            )
            recovered.append(updated)
        if not recovered:
            logger.info("[Recovery] No interrupted runs found")
        return recovered

    def delete_hypothesis(self, hypothesis_id: str) -> None:
        self.storage.delete_hypothesis(hypothesis_id)

    async def shutdown(self) -> None:
        tasks = [task for task in self.running_tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.running_tasks.clear()
        self.signals.clear_all()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _require_status(self, run_id: str, allowed: list[RunStatus]) -> Run:
        run = self.get_run(run_id)
        if run.status not in allowed:
            raise InvalidRunStateError(run_id, run.status.value, [s.value for s in allowed])
        return run

    def _schedule(self, run_id: str) -> None:
        existing = self.running_tasks.get(run_id)
        if existing and not existing.done():
            return
        self.running_tasks[run_id] = asyncio.create_task(self._drive(run_id))

    async def _drive(self, run_id: str) -> None:
        try:
            await self.sequencer.drive(run_id, self.config.step_budget_seconds)
        except Exception:
            # Step failures are persisted by the sequencer; this catches storage errors
            logger.exception("[Run %s] Sequencer task crashed", run_id)
        finally:
            if self.running_tasks.get(run_id) is asyncio.current_task():
                del self.running_tasks[run_id]


def build_manager(config: PipelineConfig) -> RunManager:
    """Wire storage, client, sequencer and lifecycle manager from config."""
    storage = SQLiteStorage(config.db_path)
    client = GenerativeClient(config)
    sequencer = StepSequencer(storage, client, config)
    return RunManager(storage, sequencer, config)
