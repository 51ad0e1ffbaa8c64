"""
Project Workflow

Owner-facing actions that change project state and hand work to other
agents:

- start_project: activate a project and delegate the ready tasks of its
  first milestone
- assign_task: set a task's assignee and, on an active project, delegate it

Delegation goes through the AgentCommunicationPort; a failed delegation is
logged and skipped, never fatal for the action.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from .errors import ProjectNotFoundError, TaskNotFoundError, ValidationError
from .models import DELEGATION_PRIORITY, Project, ProjectStatus, ProjectTask, TaskStatus
from .notifications import delegation_description
from .ports import AgentCommunicationPort
from .project_repository import ProjectRepository, dependencies_met

logger = logging.getLogger("project_workflow")

_STARTABLE = (ProjectStatus.PLANNING, ProjectStatus.ON_HOLD)


@dataclass
class StartResult:
    project_id: str
    name: str
    total_tasks: int
    delegated_tasks: int
    self_assigned_tasks: int
    milestones: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "name": self.name,
            "status": ProjectStatus.ACTIVE.value,
            "total_tasks": self.total_tasks,
            "delegated_tasks": self.delegated_tasks,
            "self_assigned_tasks": self.self_assigned_tasks,
            "milestones": self.milestones,
        }


@dataclass
class AssignResult:
    task_id: str
    title: str
    assignee_id: str
    assignee_name: str
    delegated: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "title": self.title,
            "assignee_id": self.assignee_id,
            "assignee_name": self.assignee_name,
            "delegated": self.delegated,
        }


class ProjectWorkflow:
    """Start projects and assign tasks, delegating ready work."""

    def __init__(
        self,
        repository: ProjectRepository,
        agent_comm: Optional[AgentCommunicationPort] = None,
    ):
        self._repository = repository
        self._agent_comm = agent_comm

    async def start_project(self, project_id: str) -> StartResult:
        """
        planning | on_hold -> active.

        Resets the standup schedule, resumes paused tasks (via the cascade)
        and kicks off the first milestone's assigned, dependency-ready todo
        tasks. Tasks assigned to the owner start directly.
        """
        project = self._repository.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        if project.status not in _STARTABLE:
            raise ValidationError([f"Project '{project.name}' is {project.status.value} and cannot be started"])

        async with self._repository.project_lock(project_id):
            next_standup = self._repository.now() + timedelta(milliseconds=project.standup_interval_ms)
            self._repository.update_project(
                project_id,
                {"status": ProjectStatus.ACTIVE, "next_standup_at": next_standup},
            )

            delegated = 0
            self_assigned = 0
            first = project.milestones[0] if project.milestones else None
            if first is not None:
                candidates = [
                    t for t in project.tasks_in_milestone(first.milestone_id)
                    if t.assignee_id and t.status == TaskStatus.TODO
                ]
                for task in candidates:
                    if not dependencies_met(project, task):
                        continue
                    if task.assignee_id == project.owner_id:
                        self._repository.update_task(project_id, task.task_id, {"status": TaskStatus.IN_PROGRESS})
                        self_assigned += 1
                        logger.info(f"Task '{task.title}' is owner-assigned, starting without delegation")
                        continue
                    if await self._delegate(project, task, task.assignee_id):
                        delegated += 1

            self._repository.recalculate_progress(project_id)

        logger.info(f"Started project {project.name}: {delegated} delegated, {self_assigned} self-assigned")
        return StartResult(
            project_id=project_id,
            name=project.name,
            total_tasks=len(project.tasks),
            delegated_tasks=delegated,
            self_assigned_tasks=self_assigned,
            milestones=len(project.milestones),
        )

    async def assign_task(
        self,
        project_id: str,
        task_id: str,
        assignee_id: str,
        assignee_name: str = "",
        auto_delegate: bool = True,
    ) -> AssignResult:
        """Assign a task; delegate it right away when the project is running."""
        if not assignee_id:
            raise ValidationError(["assignee_id is required"])
        project = self._repository.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        task = project.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(project_id, task_id)

        async with self._repository.project_lock(project_id):
            self._repository.update_task(
                project_id,
                task_id,
                {"assignee_id": assignee_id, "assignee_name": assignee_name},
            )

            delegated = False
            if (
                auto_delegate
                and project.status == ProjectStatus.ACTIVE
                and assignee_id != project.owner_id
                and task.status == TaskStatus.TODO
                and dependencies_met(project, task)
            ):
                delegated = await self._delegate(project, task, assignee_id)

        logger.info(
            f"Assigned task '{task.title}' to {assignee_name or assignee_id}"
            f"{' and delegated it' if delegated else ''}"
        )
        return AssignResult(
            task_id=task_id,
            title=task.title,
            assignee_id=assignee_id,
            assignee_name=assignee_name,
            delegated=delegated,
        )

    async def _delegate(self, project: Project, task: ProjectTask, assignee_id: str) -> bool:
        if self._agent_comm is None:
            logger.warning(f"No delegation channel configured, task '{task.title}' not delegated")
            return False

        try:
            delegated_id = await self._agent_comm.delegate_task(
                project.owner_id,
                assignee_id,
                delegation_description(project, task),
                priority=DELEGATION_PRIORITY[task.priority],
            )
        except Exception as e:
            logger.warning(f"Delegation of task '{task.title}' failed: {e}")
            return False

        if not delegated_id:
            logger.warning(f"Delegation of task '{task.title}' returned no task id")
            return False

        self._repository.update_task(
            project.project_id,
            task.task_id,
            {"status": TaskStatus.IN_PROGRESS, "delegated_task_id": delegated_id},
        )
        logger.debug(f"Task '{task.title}' delegated to {assignee_id} as {delegated_id}")
        return True
