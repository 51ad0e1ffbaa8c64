"""
External Hooks

Event-driven entry points invoked by the delegation subsystem and the
operations dashboard when linked work changes state outside a tick.

Every hook:
- resolves the owning project/task through the repository's reverse index
- holds the project lock so it never interleaves with a reconciliation tick
- treats an unresolved reference or an unexpected source state as a no-op
- catches and logs every failure; callers always return normally
"""

import logging
from typing import Optional

from .models import DelegatedStatus, ProjectStatus, ProjectTask, TaskStatus
from .notifications import SYSTEM_AUTHOR_ID, SYSTEM_AUTHOR_NAME, delegated_failure_note
from .ports import DashboardPort
from .project_repository import ProjectRepository
from .reconciliation_loop import map_delegated_status, mirror_to_dashboard

logger = logging.getLogger("external_hooks")

# Operations task status -> project task status
OPS_TO_TASK_STATUS = {
    "done": TaskStatus.DONE,
    "in_progress": TaskStatus.IN_PROGRESS,
    "cancelled": TaskStatus.BLOCKED,
    "review": TaskStatus.REVIEW,
}

_OPS_SYNC_PROJECT_STATES = (ProjectStatus.ACTIVE, ProjectStatus.PLANNING)


class ExternalHooks:
    """Applies external status events to project tasks."""

    def __init__(self, repository: ProjectRepository, dashboard: Optional[DashboardPort] = None):
        self._repository = repository
        self._dashboard = dashboard

    async def on_delegated_task_status_change(
        self,
        delegated_task_id: str,
        status,
        result: Optional[str] = None,
    ) -> Optional[ProjectTask]:
        """Apply the delegated-status mapping immediately. Returns the changed task."""
        try:
            delegated_status = DelegatedStatus(status)
            found = self._repository.find_by_delegated_task_id(delegated_task_id)
            if not found:
                logger.debug(f"No project task linked to delegated task {delegated_task_id}")
                return None
            project, _ = found

            async with self._repository.project_lock(project.project_id):
                task = self._resolve(project.project_id, delegated_task_id=delegated_task_id)
                if task is None:
                    return None

                new_status = map_delegated_status(task.status, delegated_status)
                if new_status is None:
                    return None

                updates = {"status": new_status}
                if new_status == TaskStatus.BLOCKED:
                    updates["blocker_note"] = delegated_failure_note(result)
                old_status = task.status
                task = self._repository.update_task(project.project_id, task.task_id, updates)

                logger.info(
                    f"Delegated task {delegated_task_id} {delegated_status.value}: "
                    f"task '{task.title}' {old_status.value} -> {new_status.value}"
                )
                await self._refresh(project.project_id)
                return task
        except Exception as e:
            logger.error(f"Delegated status hook failed for {delegated_task_id}: {e}")
            return None

    async def on_task_review_approved(self, delegated_task_id: str) -> Optional[ProjectTask]:
        """review -> done."""
        return await self._review_transition(delegated_task_id, TaskStatus.DONE, "approved")

    async def on_task_review_rejected(
        self,
        delegated_task_id: str,
        feedback: Optional[str] = None,
    ) -> Optional[ProjectTask]:
        """review -> in_progress, recording the reviewer's feedback if given."""
        return await self._review_transition(
            delegated_task_id, TaskStatus.IN_PROGRESS, "rejected", feedback
        )

    async def _review_transition(
        self,
        delegated_task_id: str,
        target: TaskStatus,
        verdict: str,
        feedback: Optional[str] = None,
    ) -> Optional[ProjectTask]:
        try:
            found = self._repository.find_by_delegated_task_id(delegated_task_id)
            if not found:
                logger.debug(f"Review {verdict} for unknown delegated task {delegated_task_id}")
                return None
            project, _ = found

            async with self._repository.project_lock(project.project_id):
                task = self._resolve(project.project_id, delegated_task_id=delegated_task_id)
                if task is None or task.status != TaskStatus.REVIEW:
                    return None

                task = self._repository.update_task(project.project_id, task.task_id, {"status": target})
                if feedback:
                    self._repository.add_progress_note(
                        project.project_id,
                        task.task_id,
                        f"Review rejected: {feedback}",
                        SYSTEM_AUTHOR_ID,
                        SYSTEM_AUTHOR_NAME,
                    )

                logger.info(f"Review {verdict} for task '{task.title}' -> {target.value}")
                await self._refresh(project.project_id)
                return task
        except Exception as e:
            logger.error(f"Review {verdict} hook failed for {delegated_task_id}: {e}")
            return None

    async def on_ops_task_status_change(self, ops_task_id: str, status: str) -> Optional[ProjectTask]:
        """Mirror an operations-task status change into its project task."""
        try:
            new_status = OPS_TO_TASK_STATUS.get(status)
            if new_status is None:
                return None
            found = self._repository.find_by_ops_task_id(ops_task_id)
            if not found:
                return None
            project, _ = found

            async with self._repository.project_lock(project.project_id):
                project = self._repository.get_project(project.project_id)
                if project is None or project.status not in _OPS_SYNC_PROJECT_STATES:
                    return None
                task = self._resolve(project.project_id, ops_task_id=ops_task_id)
                if task is None or task.status in TaskStatus.terminal_states():
                    return None
                if task.status == new_status:
                    return None

                old_status = task.status
                task = self._repository.update_task(project.project_id, task.task_id, {"status": new_status})
                self._repository.add_progress_note(
                    project.project_id,
                    task.task_id,
                    f"Operations task status changed: {old_status.value} -> {new_status.value}",
                    SYSTEM_AUTHOR_ID,
                    SYSTEM_AUTHOR_NAME,
                )

                logger.info(f"Ops task {ops_task_id} {status}: task '{task.title}' -> {new_status.value}")
                await self._refresh(project.project_id)
                return task
        except Exception as e:
            logger.error(f"Ops status hook failed for {ops_task_id}: {e}")
            return None

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _resolve(
        self,
        project_id: str,
        delegated_task_id: Optional[str] = None,
        ops_task_id: Optional[str] = None,
    ) -> Optional[ProjectTask]:
        """Re-resolve under the lock; the task may have moved or been deleted."""
        project = self._repository.get_project(project_id)
        if project is None:
            return None
        for task in project.tasks:
            if delegated_task_id and task.delegated_task_id == delegated_task_id:
                return task
            if ops_task_id and task.ops_task_id == ops_task_id:
                return task
        return None

    async def _refresh(self, project_id: str) -> None:
        self._repository.recalculate_progress(project_id)
        project = self._repository.get_project(project_id)
        if project is None:
            return
        try:
            await mirror_to_dashboard(self._dashboard, project)
        except Exception as e:
            logger.error(f"Dashboard mirror failed for project {project_id}: {e}")
