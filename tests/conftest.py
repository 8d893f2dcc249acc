"""Shared fixtures: in-memory storage, a seeded project and a scripted client."""

import asyncio
import json
import os
import re
from collections.abc import Callable

# The API module builds its manager at import time
os.environ.setdefault("ASIP_DB_PATH", ":memory:")

import pytest

from asip.contracts.schemas import (
    ModelTier,
    PipelineConfig,
    Project,
    ResearchPoll,
    ResearchStatus,
    ResearchStrategyName,
    Resource,
    ResourceType,
    Run,
)
from asip.errors import ContentGenerationError, DeepResearchError
from asip.output.tables import STEP5_COLUMNS
from asip.pipeline.control import ControlSignalRegistry
from asip.pipeline.lifecycle import RunManager
from asip.pipeline.sequencer import StepSequencer
from asip.store.storage import SQLiteStorage


def _step_of(prompt: str) -> int:
    if "Final Integration" in prompt:
        return 5
    if "War Gaming Mode" in prompt:
        return 4
    if "Dr. Kill-Switch" in prompt:
        return 3
    raise AssertionError(f"Unrecognised prompt: {prompt[:80]}")


class FakeClient:
    """Scripted stand-in for GenerativeClient.

    Breadth research reports contain one "HYP: <title>" line per hypothesis;
    the extraction call turns those lines into the JSON the extractor expects.
    """

    def __init__(self) -> None:
        self.report_hypotheses = 5
        self.regenerate_hypotheses: int | None = None  # None: exactly the missing count
        self.pending_polls = 0
        self.fail_polls = False
        self.fail_item_starts: set[str] = set()
        self.fail_step: int | None = None
        self.on_step: Callable[[int], None] | None = None

        self.calls: list[tuple[str, ModelTier, bool]] = []
        self.research_prompts: list[str] = []
        self.deleted_stores: list[str] = []
        self.max_open = 0
        self._open: set[str] = set()
        self._polls: dict[str, int] = {}
        self._reports: dict[str, str] = {}
        self._interactions = 0
        self._hypotheses = 0

    def step_calls(self, step: int) -> int:
        return sum(
            1
            for prompt, _, _ in self.calls
            if not prompt.startswith(("Extract", "Building")) and _step_of(prompt) == step
        )

    async def complete_prompt(
        self, prompt: str, tier: ModelTier = ModelTier.PRO, use_search: bool = False
    ) -> str:
        await asyncio.sleep(0)
        self.calls.append((prompt, tier, use_search))

        if prompt.startswith("Extract structured data"):
            titles = re.findall(r"^HYP: (.+)$", prompt, re.M)
            return json.dumps(
                [
                    {"title": t, "tradeoff": "trade-off", "mechanism": "mechanism", "moat": "moat"}
                    for t in titles
                ]
            )

        if prompt.startswith("Building on the previous research results"):
            missing = int(re.search(r"generate (\d+) additional", prompt).group(1))
            count = missing if self.regenerate_hypotheses is None else self.regenerate_hypotheses
            lines = []
            for _ in range(count):
                self._hypotheses += 1
                lines.append(f"HYP: Hypothesis {self._hypotheses}")
            return "\n".join(lines)

        step = _step_of(prompt)
        if self.on_step is not None:
            self.on_step(step)
        if step == self.fail_step:
            raise ContentGenerationError(f"step {step} failed")
        if step == 5:
            count = int(re.search(r"One row per hypothesis, (\d+) rows", prompt).group(1))
            rows = [
                f"Idea {i + 1}\tMaterials\tCoatings\tSummary\tProblem\tGo\t80\tGo\tA\t70\t75"
                for i in range(count)
            ]
            return "\n".join(["\t".join(STEP5_COLUMNS), *rows])
        return f"step {step} output"

    async def create_reference_store(self, label: str) -> str:
        return f"store-{label}"

    async def attach_document(self, store_id: str, content: str, label: str) -> None:
        return None

    async def delete_reference_store(self, store_id: str) -> None:
        self.deleted_stores.append(store_id)

    async def start_research(self, prompt: str, store_ids: list[str]) -> str:
        await asyncio.sleep(0)
        title = re.search(r"^Title: (.+)$", prompt, re.M)
        if title and title.group(1) in self.fail_item_starts:
            raise DeepResearchError(f"Could not start research for {title.group(1)}")

        self._interactions += 1
        interaction_id = f"interaction-{self._interactions}"
        if title:
            report = f"Deep dive on {title.group(1)}"
        else:
            lines = []
            for _ in range(self.report_hypotheses):
                self._hypotheses += 1
                lines.append(f"HYP: Hypothesis {self._hypotheses}")
            report = "Portfolio report\n" + "\n".join(lines)

        self.research_prompts.append(prompt)
        self._reports[interaction_id] = report
        self._polls[interaction_id] = 0
        self._open.add(interaction_id)
        self.max_open = max(self.max_open, len(self._open))
        return interaction_id

    async def poll_research(self, interaction_id: str) -> ResearchPoll:
        if self.fail_polls:
            raise DeepResearchError("503 Service Unavailable")
        self._polls[interaction_id] += 1
        if self._polls[interaction_id] <= self.pending_polls:
            return ResearchPoll(status=ResearchStatus.IN_PROGRESS)
        self._open.discard(interaction_id)
        return ResearchPoll(status=ResearchStatus.COMPLETED, result=self._reports[interaction_id])


@pytest.fixture
def storage():
    store = SQLiteStorage(":memory:")
    yield store
    store.close()


@pytest.fixture
def config():
    return PipelineConfig(
        gemini_api_key="test-key",
        research_poll_interval=0.0,
        research_min_interval=0.0,
    )


@pytest.fixture
def project(storage):
    return storage.create_project(Project(name="Coatings"))


@pytest.fixture
def resources(storage, project):
    target = storage.create_resource(
        Resource(
            project_id=project.id,
            type=ResourceType.TARGET_SPEC,
            name="target.md",
            content="Automotive OEMs need scratch-resistant clear coats.",
        )
    )
    assets = storage.create_resource(
        Resource(
            project_id=project.id,
            type=ResourceType.TECHNICAL_ASSETS,
            name="assets.md",
            content="Self-healing polyurethane chemistry.",
        )
    )
    return target, assets


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def signals():
    return ControlSignalRegistry()


@pytest.fixture
def sequencer(storage, fake_client, config, signals):
    return StepSequencer(storage, fake_client, config, signals=signals)


@pytest.fixture
def manager(storage, sequencer, config, signals):
    return RunManager(storage, sequencer, config, signals=signals)


@pytest.fixture
def make_run(storage, project, resources):
    """Insert a run directly, bypassing the lifecycle manager."""
    target, assets = resources

    def _make(**overrides) -> Run:
        values = {
            "project_id": project.id,
            "target_spec_id": target.id,
            "technical_assets_id": assets.id,
            "hypothesis_count": 5,
            "loop_count": 1,
            "strategy": ResearchStrategyName.SHARED,
        }
        values.update(overrides)
        return storage.create_run(Run(**values))

    return _make
