"""
Boomerang Results Merger

Recomposes the outputs of a parent task's completed subtasks into one
result and a final summary, and reports per-parent progress.
"""

import logging
from typing import Any, Dict, List

from .errors import NotFoundError
from .models import ParentTask, ParentTaskStatus, Subtask, SubtaskStatus, utc_now_iso
from .task_store import TaskStore

logger = logging.getLogger("results_merger")

# Subtask status -> progress percentage
STATUS_PROGRESS = {
    SubtaskStatus.CREATED.value: 0,
    SubtaskStatus.PENDING.value: 0,
    SubtaskStatus.APPROVED.value: 25,
    SubtaskStatus.EXECUTING.value: 50,
    SubtaskStatus.COMPLETED.value: 100,
    SubtaskStatus.FAILED.value: 0,
    SubtaskStatus.REJECTED.value: 0,
}

ACHIEVEMENT_KEYWORDS = (
    (("design", "architecture"), "Completed design and architecture phase"),
    (("implement", "functionality"), "Completed core implementation"),
    (("test", "coverage"), "Completed testing phase"),
)


class ResultsMerger:
    def __init__(self, store: TaskStore):
        self.store = store

    def _require_parent(self, parent_task_id: str) -> ParentTask:
        parent = self.store.load_parent_task(parent_task_id)
        if parent is None:
            raise NotFoundError("task", parent_task_id)
        return parent

    async def merge_subtask_results(self, parent_task_id: str) -> Dict[str, Any]:
        """
        Merge completed subtask outputs and mark the parent completed.

        Returns:
            Dict with merged_results, final_summary and subtask_count
        """
        parent = self._require_parent(parent_task_id)
        completed = []
        for subtask_id in parent.subtasks:
            subtask = self.store.load_subtask(subtask_id)
            if subtask is not None and subtask.status == SubtaskStatus.COMPLETED.value:
                completed.append(subtask)

        merged = self.combine_results(completed)
        final_summary = self.generate_final_summary(parent, completed, merged)

        parent.status = ParentTaskStatus.COMPLETED.value
        parent.completed_at = utc_now_iso()
        parent.merged_results = merged
        parent.final_summary = final_summary
        await self.store.save_task(parent)

        logger.info(f"Merged {len(completed)}/{len(parent.subtasks)} subtasks into task {parent.id}")
        return {
            "parent_task": parent.to_dict(),
            "merged_results": merged,
            "final_summary": final_summary,
            "subtask_count": len(completed),
        }

    def combine_results(self, subtasks: List[Subtask]) -> Dict[str, Any]:
        key_outputs: List[str] = []
        files_modified: List[str] = []
        recommendations: List[str] = []
        total_ms = 0
        summaries = []
        upward_contexts = []

        for subtask in subtasks:
            results = subtask.results or {}
            key_outputs.extend(results.get("key_outputs", []))
            files_modified.extend(results.get("files_modified", []))
            recommendations.extend(results.get("recommendations", []))
            total_ms += int(results.get("execution_time_ms") or 0)
            summaries.append({
                "id": subtask.id,
                "title": subtask.title,
                "type": subtask.task_type,
                "status": subtask.status,
                "summary": subtask.summary,
            })
            context = self.store.load_context(subtask.context_id)
            if context is not None and context.upward_context is not None:
                upward_contexts.append(context.upward_context)

        return {
            "all_key_outputs": key_outputs,
            # De-duplicated, first occurrence order
            "all_files_modified": list(dict.fromkeys(files_modified)),
            "all_recommendations": recommendations,
            "total_execution_time_ms": total_ms,
            "subtask_summaries": summaries,
            "upward_contexts": upward_contexts,
        }

    def generate_final_summary(
        self,
        parent: ParentTask,
        completed: List[Subtask],
        merged: Dict[str, Any],
    ) -> Dict[str, Any]:
        completed_count = len(completed)
        total_count = len(parent.subtasks)
        return {
            "task_id": parent.id,
            "original_description": parent.description,
            "completion_status": f"{completed_count}/{total_count} subtasks completed",
            "completed_subtasks": completed_count,
            "total_subtasks": total_count,
            "completion_ratio": completed_count / total_count if total_count else 0.0,
            "overall_success": completed_count == total_count,
            "key_achievements": self.extract_key_achievements(merged),
            "files_affected": len(merged["all_files_modified"]),
            "recommendations_count": len(merged["all_recommendations"]),
            "total_execution_time_ms": merged["total_execution_time_ms"],
            "next_steps": self.suggest_next_steps(merged),
            "completed_at": utc_now_iso(),
        }

    @staticmethod
    def extract_key_achievements(merged: Dict[str, Any]) -> List[str]:
        outputs = [o.lower() for o in merged["all_key_outputs"]]
        achievements = []
        if outputs:
            achievements.append(f"Generated {len(outputs)} key outputs")
        if merged["all_files_modified"]:
            achievements.append(f"Modified {len(merged['all_files_modified'])} files")
        for keywords, phrase in ACHIEVEMENT_KEYWORDS:
            if any(kw in output for output in outputs for kw in keywords):
                achievements.append(phrase)
        return achievements

    @staticmethod
    def suggest_next_steps(merged: Dict[str, Any]) -> List[str]:
        steps = []
        if merged["all_recommendations"]:
            steps.append("Review and implement recommendations from subtasks")
        if merged["all_files_modified"]:
            steps.append("Verify all file modifications are correct")
            steps.append("Run tests to ensure no regressions")

        types = {s["type"] for s in merged["subtask_summaries"]}
        if "implementation" in types and "testing" not in types:
            steps.append("Consider adding comprehensive tests")

        steps.append("Document the changes and update project documentation")
        steps.append("Consider deployment or next iteration planning")
        return steps

    def get_task_progress(self, parent_task_id: str) -> Dict[str, Any]:
        parent = self._require_parent(parent_task_id)
        statuses = []
        for subtask_id in parent.subtasks:
            subtask = self.store.load_subtask(subtask_id)
            if subtask is None:
                continue
            statuses.append({
                "id": subtask.id,
                "title": subtask.title,
                "status": subtask.status,
                "type": subtask.task_type,
                "mode": subtask.mode,
                "approval_status": subtask.approval_status,
                "progress": STATUS_PROGRESS.get(subtask.status, 0),
            })

        total = len(statuses)
        completed = sum(1 for s in statuses if s["status"] == SubtaskStatus.COMPLETED.value)
        average = sum(s["progress"] for s in statuses) / total if total else 0.0
        return {
            "parent_task_id": parent.id,
            "description": parent.description,
            "total_subtasks": total,
            "completed_subtasks": completed,
            "progress_percentage": int(average + 0.5),
            "subtasks": statuses,
            "overall_status": parent.status,
            "created_at": parent.created_at,
        }
