"""
Unit Tests for the Results Merger

Test coverage for:
- Merging only completed subtasks
- Final summary success and completion ratio
- De-duplicated file lists and next-step suggestions
- Progress percentage across subtask states
"""

import pytest

from boomerang.errors import NotFoundError
from boomerang.results_merger import ResultsMerger

from .conftest import AUTH_TASK_DESCRIPTION


async def parent_with_subtasks(service, configs, requires_approval=False):
    parent = await service.orchestrator.analyze_task(AUTH_TASK_DESCRIPTION)
    subtasks = []
    for config in configs:
        subtasks.append(await service.subtask_manager.create_subtask(
            parent.id, config, requires_approval=requires_approval,
        ))
    return parent, subtasks


def design_config(title="Design"):
    return {"title": title, "description": "Design the data model", "type": "design"}


class TestMerge:
    """Tests for merge_subtask_results."""

    @pytest.mark.asyncio
    async def test_partial_completion_is_not_overall_success(self, service):
        parent, subtasks = await parent_with_subtasks(
            service, [design_config("A"), design_config("B"), design_config("C")],
        )
        for subtask in subtasks[:2]:
            await service.subtask_manager.execute_subtask(subtask.id)

        merged = await service.results_merger.merge_subtask_results(parent.id)

        assert merged["subtask_count"] == 2
        summary = merged["final_summary"]
        assert summary["completion_status"] == "2/3 subtasks completed"
        assert summary["overall_success"] is False
        assert summary["completion_ratio"] == pytest.approx(2 / 3)
        # both design subtasks touch the same file
        assert merged["merged_results"]["all_files_modified"] == ["docs/design.md"]
        assert len(merged["merged_results"]["upward_contexts"]) == 2

        stored = service.store.load_parent_task(parent.id)
        assert stored.status == "completed"
        assert stored.completed_at is not None
        assert stored.final_summary["overall_success"] is False

    @pytest.mark.asyncio
    async def test_full_completion(self, service):
        parent, subtasks = await parent_with_subtasks(service, [
            design_config(),
            {"title": "Build", "description": "Implement it", "type": "implementation"},
        ])
        for subtask in subtasks:
            await service.subtask_manager.execute_subtask(subtask.id)

        merged = await service.results_merger.merge_subtask_results(parent.id)
        results = merged["merged_results"]
        summary = merged["final_summary"]

        assert summary["overall_success"] is True
        assert results["total_execution_time_ms"] == sum(
            service.store.load_subtask(s.id).results["execution_time_ms"] for s in subtasks
        )
        assert [s["type"] for s in results["subtask_summaries"]] == ["design", "implementation"]
        assert "Completed design and architecture phase" in summary["key_achievements"]
        assert "Consider adding comprehensive tests" in summary["next_steps"]

    @pytest.mark.asyncio
    async def test_parent_without_subtasks(self, service):
        parent = await service.orchestrator.analyze_task("Fix typo")
        merged = await service.results_merger.merge_subtask_results(parent.id)
        assert merged["subtask_count"] == 0
        assert merged["final_summary"]["completion_ratio"] == 0.0
        # nothing outstanding counts as success
        assert merged["final_summary"]["overall_success"] is True

    @pytest.mark.asyncio
    async def test_unknown_parent(self, store):
        with pytest.raises(NotFoundError):
            await ResultsMerger(store).merge_subtask_results("task-missing")


class TestProgress:
    """Tests for get_task_progress."""

    @pytest.mark.asyncio
    async def test_half_done(self, service):
        parent, subtasks = await parent_with_subtasks(service, [design_config("A"), design_config("B")])
        await service.subtask_manager.execute_subtask(subtasks[0].id)

        progress = service.results_merger.get_task_progress(parent.id)
        assert progress["total_subtasks"] == 2
        assert progress["completed_subtasks"] == 1
        assert progress["progress_percentage"] == 50
        assert [s["progress"] for s in progress["subtasks"]] == [100, 0]

    @pytest.mark.asyncio
    async def test_approved_counts_a_quarter_and_rounds_half_up(self, service):
        docs_config = {
            "title": "Docs",
            "description": "Write the readme",
            "type": "design",
            "suggested_mode": "docs",
            "priority": "low",
            "estimated_duration": "10-20 minutes",
        }
        parent, subtasks = await parent_with_subtasks(
            service, [docs_config, design_config()], requires_approval=True,
        )
        assert subtasks[0].status == "approved"
        await service.subtask_manager.execute_subtask(subtasks[1].id)

        progress = service.results_merger.get_task_progress(parent.id)
        # (25 + 100) / 2 = 62.5
        assert progress["progress_percentage"] == 63

    @pytest.mark.asyncio
    async def test_no_subtasks(self, service):
        parent = await service.orchestrator.analyze_task("Fix typo")
        progress = service.results_merger.get_task_progress(parent.id)
        assert progress["total_subtasks"] == 0
        assert progress["progress_percentage"] == 0

    def test_unknown_parent(self, store):
        with pytest.raises(NotFoundError):
            ResultsMerger(store).get_task_progress("task-missing")
