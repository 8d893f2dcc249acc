"""Tests for the per-hypothesis research strategy (bounded fan-out)."""

from datetime import datetime, timedelta

import pytest

from asip.contracts.schemas import (
    ItemPhase,
    ItemStatus,
    ResearchItem,
    ResearchStrategyName,
    RunStatus,
)
from asip.pipeline.steps import SequencerAction
from asip.pipeline.strategies import categorize_items

PER_HYPOTHESIS = ResearchStrategyName.PER_HYPOTHESIS


def _item(run_id: str, index: int, status: ItemStatus, interaction_id: str | None = None):
    return ResearchItem(
        run_id=run_id,
        loop=1,
        item_index=index,
        title=f"Hypothesis {index + 1}",
        status=status,
        interaction_id=interaction_id,
    )


class TestFanOutDecisions:
    """Phase priority: start > evaluate > poll > collect."""

    def test_starts_while_slots_are_free(self, sequencer, make_run):
        run = make_run(strategy=PER_HYPOTHESIS, status=RunStatus.RUNNING)
        items = [_item(run.id, i, ItemStatus.RESEARCHING, f"int-{i}") for i in range(4)]
        items.append(_item(run.id, 4, ItemStatus.PENDING))

        assert sequencer.next_action(run, items) == SequencerAction.FAN_OUT_START

    def test_full_pool_polls(self, sequencer, make_run):
        run = make_run(strategy=PER_HYPOTHESIS, status=RunStatus.RUNNING)
        items = [_item(run.id, i, ItemStatus.RESEARCHING, f"int-{i}") for i in range(5)]
        items.append(_item(run.id, 5, ItemStatus.PENDING))

        assert sequencer.next_action(run, items) == SequencerAction.FAN_OUT_POLL

    def test_evaluation_before_polling(self, sequencer, make_run):
        run = make_run(strategy=PER_HYPOTHESIS, status=RunStatus.RUNNING)
        items = [_item(run.id, i, ItemStatus.RESEARCHING, f"int-{i}") for i in range(5)]
        items.append(_item(run.id, 5, ItemStatus.RESEARCHED))

        assert sequencer.next_action(run, items) == SequencerAction.FAN_OUT_EVALUATE

    def test_collects_when_every_item_is_done(self, sequencer, make_run):
        run = make_run(strategy=PER_HYPOTHESIS, status=RunStatus.RUNNING)
        items = [
            _item(run.id, 0, ItemStatus.COMPLETED),
            _item(run.id, 1, ItemStatus.ERROR),
        ]

        assert sequencer.next_action(run, items) == SequencerAction.FAN_OUT_COLLECT

    def test_stuck_item_is_restartable(self, sequencer, make_run):
        run = make_run(strategy=PER_HYPOTHESIS, status=RunStatus.RUNNING)
        items = [_item(run.id, 0, ItemStatus.RESEARCHING)]

        assert items[0].phase == ItemPhase.STUCK
        assert sequencer.next_action(run, items) == SequencerAction.FAN_OUT_START

    def test_categorize_items(self):
        items = [
            _item("r", 0, ItemStatus.PENDING),
            _item("r", 1, ItemStatus.RESEARCHING, "int-1"),
            _item("r", 2, ItemStatus.EVALUATING),
            _item("r", 3, ItemStatus.ERROR),
        ]
        groups = categorize_items(items)
        assert [i.item_index for i in groups[ItemPhase.PENDING]] == [0]
        assert [i.item_index for i in groups[ItemPhase.POLLING]] == [1]
        assert [i.item_index for i in groups[ItemPhase.IN_EVALUATION]] == [2]
        assert [i.item_index for i in groups[ItemPhase.COMPLETED]] == [3]
        assert groups[ItemPhase.READY_FOR_EVAL] == []


class TestFanOutRuns:
    """Full drives with the per-hypothesis strategy."""

    @pytest.mark.asyncio
    async def test_open_handles_never_exceed_cap(
        self, sequencer, storage, fake_client, make_run, project
    ):
        fake_client.pending_polls = 1
        run = make_run(strategy=PER_HYPOTHESIS, hypothesis_count=7)

        final = await sequencer.drive(run.id)

        assert final.status == RunStatus.COMPLETED
        assert fake_client.max_open == 5
        # breadth research plus one interaction per item
        assert len(fake_client.research_prompts) == 8
        items = storage.list_research_items(run.id, 1)
        assert len(items) == 7
        assert all(item.status == ItemStatus.COMPLETED for item in items)
        assert len(storage.list_hypotheses(project.id)) == 7
        assert fake_client.deleted_stores == [f"store-asip-run-{run.id}-loop-1"]

    @pytest.mark.asyncio
    async def test_items_are_evaluated_with_a_count_of_one(self, sequencer, fake_client, make_run):
        run = make_run(strategy=PER_HYPOTHESIS, hypothesis_count=2)

        final = await sequencer.drive(run.id)

        assert final.status == RunStatus.COMPLETED
        assert fake_client.step_calls(3) == 2
        step3_prompts = [p for p, _, _ in fake_client.calls if "Dr. Kill-Switch" in p]
        assert all("Evaluate all 1 hypotheses." in p for p in step3_prompts)
        assert "## Hypothesis 1" in final.step3_output
        assert "## Hypothesis 2" in final.step3_output
        assert final.step5_output.count("Hypothesis Title") == 1

    @pytest.mark.asyncio
    async def test_start_failure_is_isolated(
        self, sequencer, storage, fake_client, make_run, project
    ):
        fake_client.fail_item_starts = {"Hypothesis 2"}
        run = make_run(strategy=PER_HYPOTHESIS, hypothesis_count=3)

        final = await sequencer.drive(run.id)

        assert final.status == RunStatus.COMPLETED
        statuses = {i.title: i.status for i in storage.list_research_items(run.id, 1)}
        assert statuses == {
            "Hypothesis 1": ItemStatus.COMPLETED,
            "Hypothesis 2": ItemStatus.ERROR,
            "Hypothesis 3": ItemStatus.COMPLETED,
        }
        assert len(storage.list_hypotheses(project.id)) == 2
        assert any(e.startswith("Hypothesis 2:") for e in final.validation_metadata.errors)

    @pytest.mark.asyncio
    async def test_all_items_failing_fails_the_run(self, sequencer, fake_client, make_run):
        fake_client.fail_item_starts = {"Hypothesis 1", "Hypothesis 2"}
        run = make_run(strategy=PER_HYPOTHESIS, hypothesis_count=2)

        final = await sequencer.drive(run.id)

        assert final.status == RunStatus.ERROR
        assert final.error_message == "All per-hypothesis research items failed"
        assert len(fake_client.deleted_stores) == 1

    @pytest.mark.asyncio
    async def test_evaluation_failure_is_isolated(self, sequencer, storage, fake_client, make_run):
        calls = {"step4": 0}

        def fail_first_step4(step):
            if step == 4:
                calls["step4"] += 1
                if calls["step4"] == 1:
                    raise RuntimeError("audit unavailable")

        fake_client.on_step = fail_first_step4
        run = make_run(strategy=PER_HYPOTHESIS, hypothesis_count=2)

        final = await sequencer.drive(run.id)

        assert final.status == RunStatus.COMPLETED
        items = storage.list_research_items(run.id, 1)
        assert sorted(i.status.value for i in items) == ["completed", "error"]
        failed = next(i for i in items if i.status == ItemStatus.ERROR)
        assert failed.error_message == "audit unavailable"
        assert failed.step3_output == "step 3 output"


class TestFanOutPolling:
    @pytest.mark.asyncio
    async def test_failing_polls_still_hit_the_ceiling(
        self, sequencer, storage, fake_client, make_run
    ):
        fake_client.fail_polls = True
        run = make_run(strategy=PER_HYPOTHESIS, status=RunStatus.RUNNING, hypothesis_count=2)
        started = datetime.now() - timedelta(hours=1)
        storage.create_research_items(
            [
                ResearchItem(
                    run_id=run.id,
                    loop=1,
                    item_index=i,
                    title=f"Hypothesis {i + 1}",
                    status=ItemStatus.RESEARCHING,
                    interaction_id=f"int-{i}",
                    started_at=started,
                )
                for i in range(2)
            ]
        )

        await sequencer.strategy_for(run).execute(SequencerAction.FAN_OUT_POLL, run)

        items = storage.list_research_items(run.id, 1)
        assert [i.status for i in items] == [ItemStatus.ERROR, ItemStatus.ERROR]
        assert all(i.error_message == "Deep research timed out" for i in items)
        assert sequencer.next_action(run, items) == SequencerAction.FAN_OUT_COLLECT

    @pytest.mark.asyncio
    async def test_failing_poll_within_ceiling_keeps_item_open(
        self, sequencer, storage, fake_client, make_run
    ):
        fake_client.fail_polls = True
        run = make_run(strategy=PER_HYPOTHESIS, status=RunStatus.RUNNING, hypothesis_count=1)
        storage.create_research_items(
            [
                ResearchItem(
                    run_id=run.id,
                    loop=1,
                    item_index=0,
                    title="Hypothesis 1",
                    status=ItemStatus.RESEARCHING,
                    interaction_id="int-0",
                    started_at=datetime.now(),
                )
            ]
        )

        await sequencer.strategy_for(run).execute(SequencerAction.FAN_OUT_POLL, run)

        (item,) = storage.list_research_items(run.id, 1)
        assert item.phase == ItemPhase.POLLING
