"""
Project Repository

Canonical source of truth for all projects in one workspace.

This module provides:
1. CRUD for projects, milestones and tasks
2. Persistence through a PersistencePort after every mutation
3. Change notification to subscribers
4. Reverse lookups from delegated / operations task ids
5. Dashboard-ready queries (summary, overdue, blocked, status report)

HARD CONSTRAINTS:
- This is the ONLY component that mutates entities
- A persistence failure is logged; the in-memory mutation still stands
- progress is derived, callers cannot set it
- CANCELLED tasks never transition onward
- Project status changes to CANCELLED / ON_HOLD run the cascade
"""

import asyncio
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from . import progress as progress_calc
from .config import DEFAULT_STANDUP_INTERVAL_MS
from .errors import DeleteRejectedError, PersistenceError, ValidationError
from .models import (
    Milestone,
    MilestoneStatus,
    ProgressNote,
    Project,
    ProjectStatus,
    ProjectTask,
    TaskPriority,
    TaskStatus,
    generate_id,
    today_str,
    utcnow,
)
from .persistence import STATE_VERSION
from .ports import PersistencePort

logger = logging.getLogger("project_repository")

Subscriber = Callable[[List[Dict[str, Any]]], None]

# Fields callers may change through the update_* operations
PROJECT_UPDATABLE = {
    "name", "description", "owner_id", "owner_name", "goal_id",
    "status", "standup_interval_ms", "next_standup_at",
}
MILESTONE_UPDATABLE = {"name", "description", "order", "due_date", "status"}
TASK_UPDATABLE = {
    "title", "description", "milestone_id", "assignee_id", "assignee_name",
    "status", "priority", "dependencies", "delegated_task_id", "ops_task_id",
    "due_date", "estimate_hours", "blocker_note", "cancel_reason",
}


def _coerce_enum(enum_cls, value, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValidationError([f"Invalid {field_name} '{value}', expected one of: {allowed}"])


def _check_fields(updates: Dict[str, Any], allowed: set, entity: str) -> None:
    errors = []
    if "progress" in updates:
        errors.append(f"{entity} progress is derived and cannot be set")
    unknown = sorted(set(updates) - allowed - {"progress"})
    if unknown:
        errors.append(f"Unknown {entity} fields: {', '.join(unknown)}")
    if errors:
        raise ValidationError(errors)


class ProjectRepository:
    """
    Owns the project collection for one workspace.

    Thread-safety: an RLock guards the in-memory collection. Async callers
    that read, await a port, then write (the reconciliation loop and the
    external hooks) additionally hold `project_lock(project_id)` so a
    project has a single async writer at a time.
    """

    def __init__(
        self,
        persistence: PersistencePort,
        cascade=None,
        default_standup_interval_ms: int = DEFAULT_STANDUP_INTERVAL_MS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._persistence = persistence
        self._cascade = cascade
        self._default_standup_interval_ms = default_standup_interval_ms
        self._clock = clock
        self._projects: Dict[str, Project] = {}
        self._subscribers: List[Subscriber] = []
        self._lock = threading.RLock()
        self._project_locks: Dict[str, asyncio.Lock] = {}
        if cascade is not None:
            cascade.attach(self)
        self._load()

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _load(self) -> None:
        try:
            state = self._persistence.load()
        except Exception as e:
            logger.error(f"Failed to load projects: {e}")
            return

        for data in state.get("projects", []):
            try:
                project = Project.from_dict(data)
                self._projects[project.project_id] = project
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Failed to load project {data.get('project_id', '?')}: {e}")

        logger.info(f"Loaded {len(self._projects)} projects")

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "projects": [p.to_dict() for p in self._projects.values()],
        }

    def _save(self) -> None:
        """Persist the full snapshot. Failures are logged, never raised."""
        try:
            self._persistence.save(self._snapshot())
        except PersistenceError as e:
            logger.error(f"Failed to persist projects ({e.code}): {e.details.get('error', e.message)}")
        except Exception as e:
            logger.error(f"Failed to persist projects: {e}")

    def _notify(self) -> None:
        if not self._subscribers:
            return
        snapshot = [p.to_dict() for p in self._projects.values()]
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"Project subscriber failed: {e}")

    def _commit(self, project: Optional[Project] = None) -> None:
        if project is not None:
            project.updated_at = self._clock()
        self._save()
        self._notify()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a change callback. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def reinitialize(self, persistence: Optional[PersistencePort] = None) -> None:
        """Drop in-memory state and reload, optionally from a new store (workspace switch)."""
        with self._lock:
            if persistence is not None:
                self._persistence = persistence
            self._projects = {}
            self._project_locks = {}
            self._load()
        self._notify()

    def project_lock(self, project_id: str) -> asyncio.Lock:
        """Per-project async lock serializing the loop against the hooks."""
        with self._lock:
            lock = self._project_locks.get(project_id)
            if lock is None:
                lock = asyncio.Lock()
                self._project_locks[project_id] = lock
            return lock

    def now(self) -> datetime:
        return self._clock()

    # -------------------------------------------------------------------------
    # Project CRUD
    # -------------------------------------------------------------------------

    def create_project(
        self,
        name: str,
        owner_id: str,
        description: str = "",
        owner_name: str = "",
        goal_id: Optional[str] = None,
        standup_interval_ms: Optional[int] = None,
    ) -> Project:
        """Create a project in PLANNING status."""
        errors = []
        if not name or not name.strip():
            errors.append("Project name is required")
        if not owner_id:
            errors.append("Project owner_id is required")
        interval = standup_interval_ms or self._default_standup_interval_ms
        if interval <= 0:
            errors.append("standup_interval_ms must be positive")
        if errors:
            raise ValidationError(errors)

        now = self._clock()
        project = Project(
            project_id=generate_id("proj"),
            name=name.strip(),
            owner_id=owner_id,
            owner_name=owner_name,
            description=description,
            goal_id=goal_id,
            created_at=now,
            updated_at=now,
            standup_interval_ms=interval,
            next_standup_at=now,
        )
        project.schedule_next_standup(now)

        with self._lock:
            self._projects[project.project_id] = project
            self._commit()

        logger.info(f"Created project: {project.name} (id={project.project_id})")
        return project

    def get_project(self, project_id: str) -> Optional[Project]:
        return self._projects.get(project_id)

    def get_projects(
        self,
        status: Optional[Union[str, ProjectStatus]] = None,
        owner_id: Optional[str] = None,
    ) -> List[Project]:
        """List projects with optional filters, most recently updated first."""
        with self._lock:
            projects = list(self._projects.values())

        if status:
            wanted = _coerce_enum(ProjectStatus, status, "status")
            projects = [p for p in projects if p.status == wanted]
        if owner_id:
            projects = [p for p in projects if p.owner_id == owner_id]

        projects.sort(key=lambda p: p.updated_at, reverse=True)
        return projects

    def update_project(
        self,
        project_id: str,
        updates: Dict[str, Any],
        cancel_reason: Optional[str] = None,
    ) -> Optional[Project]:
        """
        Update project fields.

        A status change to CANCELLED cascades a cancel over the subtree,
        to ON_HOLD a pause, and ON_HOLD -> ACTIVE resumes paused tasks.
        """
        _check_fields(updates, PROJECT_UPDATABLE, "project")
        updates = dict(updates)
        if "status" in updates:
            updates["status"] = _coerce_enum(ProjectStatus, updates["status"], "status")
        if "standup_interval_ms" in updates:
            interval = updates["standup_interval_ms"]
            if not isinstance(interval, int) or interval <= 0:
                raise ValidationError(["standup_interval_ms must be a positive integer"])
        if isinstance(updates.get("next_standup_at"), str):
            updates["next_standup_at"] = datetime.fromisoformat(updates["next_standup_at"])

        with self._lock:
            project = self.get_project(project_id)
            if not project:
                return None

            old_status = project.status
            for key, value in updates.items():
                setattr(project, key, value)

            new_status = project.status
            if new_status != old_status:
                logger.info(f"Project {project_id} status: {old_status.value} -> {new_status.value}")
                if self._cascade is not None:
                    if new_status == ProjectStatus.CANCELLED:
                        self._cascade.cancel(project, reason=cancel_reason)
                    elif new_status == ProjectStatus.ON_HOLD:
                        self._cascade.pause(project)
                    elif old_status == ProjectStatus.ON_HOLD and new_status == ProjectStatus.ACTIVE:
                        self._cascade.resume(project)

            self._commit(project)
            return project

    def delete_project(self, project_id: str, force: bool = False) -> Tuple[bool, str]:
        """
        Permanently delete a project.

        An ACTIVE project with unfinished tasks is refused unless forced.
        """
        with self._lock:
            project = self.get_project(project_id)
            if not project:
                return False, f"Project '{project_id}' not found"

            unfinished = [t for t in project.tasks if t.status not in TaskStatus.terminal_states()]
            if project.status == ProjectStatus.ACTIVE and unfinished and not force:
                raise DeleteRejectedError(project_id, len(unfinished))

            del self._projects[project_id]
            self._project_locks.pop(project_id, None)
            self._commit()

        logger.info(f"Deleted project: {project.name} (id={project_id})")
        return True, f"Project '{project.name}' deleted"

    # -------------------------------------------------------------------------
    # Milestones
    # -------------------------------------------------------------------------

    def add_milestone(
        self,
        project_id: str,
        name: str,
        description: str = "",
        order: Optional[int] = None,
        due_date: Optional[str] = None,
    ) -> Optional[Milestone]:
        if not name or not name.strip():
            raise ValidationError(["Milestone name is required"])

        with self._lock:
            project = self.get_project(project_id)
            if not project:
                return None

            milestone = Milestone(
                milestone_id=generate_id("ms"),
                name=name.strip(),
                description=description,
                order=order if order is not None else len(project.milestones),
                due_date=due_date,
            )
            project.milestones.append(milestone)
            project.sort_milestones()
            self._commit(project)

        logger.info(f"Added milestone {milestone.name} to project {project_id}")
        return milestone

    def update_milestone(
        self,
        project_id: str,
        milestone_id: str,
        updates: Dict[str, Any],
    ) -> Optional[Milestone]:
        _check_fields(updates, MILESTONE_UPDATABLE, "milestone")

        with self._lock:
            project = self.get_project(project_id)
            if not project:
                return None
            milestone = project.get_milestone(milestone_id)
            if not milestone:
                return None

            values = dict(updates)
            if "status" in values:
                values["status"] = _coerce_enum(MilestoneStatus, values["status"], "milestone status")
            if "order" in values and (not isinstance(values["order"], int) or isinstance(values["order"], bool)):
                raise ValidationError([f"Milestone order must be an integer, got {values['order']!r}"])

            for key, value in values.items():
                setattr(milestone, key, value)

            if "order" in updates:
                project.sort_milestones()
            self._commit(project)
            return milestone

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    def add_task(
        self,
        project_id: str,
        title: str,
        milestone_id: str,
        description: str = "",
        assignee_id: Optional[str] = None,
        assignee_name: str = "",
        priority: Union[str, TaskPriority] = TaskPriority.MEDIUM,
        dependencies: Optional[List[str]] = None,
        due_date: Optional[str] = None,
        estimate_hours: Optional[float] = None,
        delegated_task_id: Optional[str] = None,
        ops_task_id: Optional[str] = None,
    ) -> Optional[ProjectTask]:
        """Add a task in TODO status to an existing milestone of the project."""
        if not title or not title.strip():
            raise ValidationError(["Task title is required"])

        with self._lock:
            project = self.get_project(project_id)
            if not project:
                return None
            if not project.get_milestone(milestone_id):
                raise ValidationError([f"Milestone '{milestone_id}' does not belong to project '{project_id}'"])

            task = ProjectTask(
                task_id=generate_id("ptask"),
                title=title.strip(),
                milestone_id=milestone_id,
                created_at=self._clock(),
                description=description,
                assignee_id=assignee_id,
                assignee_name=assignee_name,
                priority=_coerce_enum(TaskPriority, priority, "priority"),
                dependencies=list(dependencies or []),
                due_date=due_date,
                estimate_hours=estimate_hours,
                delegated_task_id=delegated_task_id,
                ops_task_id=ops_task_id,
            )
            project.tasks.append(task)
            self._commit(project)

        logger.debug(f"Added task {task.task_id} '{task.title}' to project {project_id}")
        return task

    def update_task(
        self,
        project_id: str,
        task_id: str,
        updates: Dict[str, Any],
    ) -> Optional[ProjectTask]:
        """
        Update task fields.

        Status changes stamp completed_at / cancelled_at / paused_at.
        A CANCELLED task rejects any further status change.
        """
        _check_fields(updates, TASK_UPDATABLE, "task")

        with self._lock:
            project = self.get_project(project_id)
            if not project:
                return None
            task = project.get_task(task_id)
            if not task:
                return None

            if "milestone_id" in updates and not project.get_milestone(updates["milestone_id"]):
                raise ValidationError([f"Milestone '{updates['milestone_id']}' does not belong to project '{project_id}'"])

            new_status = None
            if "status" in updates:
                new_status = _coerce_enum(TaskStatus, updates["status"], "task status")
                if task.status == TaskStatus.CANCELLED and new_status != TaskStatus.CANCELLED:
                    raise ValidationError([f"Task '{task_id}' is cancelled and cannot move to {new_status.value}"])
            priority = None
            if "priority" in updates:
                priority = _coerce_enum(TaskPriority, updates["priority"], "priority")

            for key, value in updates.items():
                if key == "status":
                    continue
                if key == "priority":
                    value = priority
                elif key == "dependencies":
                    value = list(value or [])
                setattr(task, key, value)

            if new_status is not None and new_status != task.status:
                self._apply_task_status(task, new_status)

            self._commit(project)
            return task

    def _apply_task_status(self, task: ProjectTask, status: TaskStatus) -> None:
        now = self._clock()
        if task.status == TaskStatus.PAUSED:
            task.paused_at = None
        task.status = status
        if status == TaskStatus.DONE:
            task.completed_at = now
        elif status == TaskStatus.CANCELLED:
            task.cancelled_at = now
        elif status == TaskStatus.PAUSED:
            task.paused_at = now

    def add_progress_note(
        self,
        project_id: str,
        task_id: str,
        content: str,
        updated_by: str,
        updated_by_name: str = "",
    ) -> Optional[ProgressNote]:
        """Append an immutable progress note to a task."""
        with self._lock:
            project = self.get_project(project_id)
            if not project:
                return None
            task = project.get_task(task_id)
            if not task:
                return None

            note = ProgressNote(
                content=content,
                updated_by=updated_by,
                updated_by_name=updated_by_name,
                timestamp=self._clock(),
            )
            task.progress_notes.append(note)
            self._commit(project)
            return note

    def recalculate_progress(self, project_id: str) -> int:
        """Recompute milestone and project progress, persist, return project progress."""
        with self._lock:
            project = self.get_project(project_id)
            if not project:
                return 0
            new_progress = progress_calc.recalculate(project)
            self._commit(project)
            return new_progress

    # -------------------------------------------------------------------------
    # Reverse Lookups
    # -------------------------------------------------------------------------

    def find_by_delegated_task_id(self, delegated_task_id: str) -> Optional[Tuple[Project, ProjectTask]]:
        if not delegated_task_id:
            return None
        with self._lock:
            for project in self._projects.values():
                for task in project.tasks:
                    if task.delegated_task_id == delegated_task_id:
                        return project, task
        return None

    def find_by_ops_task_id(self, ops_task_id: str) -> Optional[Tuple[Project, ProjectTask]]:
        if not ops_task_id:
            return None
        with self._lock:
            for project in self._projects.values():
                for task in project.tasks:
                    if task.ops_task_id == ops_task_id:
                        return project, task
        return None

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def are_dependencies_met(self, project_id: str, task_id: str) -> bool:
        """True when every dependency is a DONE sibling task (or there are none)."""
        project = self.get_project(project_id)
        if not project:
            return True
        task = project.get_task(task_id)
        if not task or not task.dependencies:
            return True
        return dependencies_met(project, task)

    def get_overdue_tasks(self, project_id: str, today: Optional[str] = None) -> List[ProjectTask]:
        project = self.get_project(project_id)
        if not project:
            return []
        return overdue_tasks(project, today or today_str(self._clock()))

    def get_blocked_tasks(self, project_id: str) -> List[ProjectTask]:
        project = self.get_project(project_id)
        if not project:
            return []
        return [t for t in project.tasks if t.status == TaskStatus.BLOCKED]

    def get_overdue_milestones(self, project_id: str, today: Optional[str] = None) -> List[Milestone]:
        project = self.get_project(project_id)
        if not project:
            return []
        return overdue_milestones(project, today or today_str(self._clock()))

    def get_projects_summary(self) -> List[Dict[str, Any]]:
        """
        Aggregate counts per project for the dashboard.

        task_count excludes cancelled tasks; tasks_cancelled reports them.
        """
        result = []
        for project in self.get_projects():
            active = [t for t in project.tasks if t.status != TaskStatus.CANCELLED]
            result.append({
                "project_id": project.project_id,
                "name": project.name,
                "status": project.status.value,
                "owner_id": project.owner_id,
                "owner": project.owner_name,
                "progress": project.progress,
                "milestone_count": len(project.milestones),
                "task_count": len(active),
                "tasks_done": sum(1 for t in active if t.status == TaskStatus.DONE),
                "tasks_blocked": sum(1 for t in active if t.status == TaskStatus.BLOCKED),
                "tasks_in_progress": sum(1 for t in active if t.status == TaskStatus.IN_PROGRESS),
                "tasks_cancelled": len(project.tasks) - len(active),
                "updated_at": project.updated_at.isoformat(),
            })
        return result

    def status_report(self, project_id: str, today: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Structured status report: progress, milestones, task counts and risks."""
        project = self.get_project(project_id)
        if not project:
            return None

        today = today or today_str(self._clock())
        overdue = overdue_tasks(project, today)
        blocked = [t for t in project.tasks if t.status == TaskStatus.BLOCKED]
        late_milestones = overdue_milestones(project, today)
        late_ids = {m.milestone_id for m in late_milestones}

        return {
            "project_id": project.project_id,
            "project": project.name,
            "status": project.status.value,
            "progress": project.progress,
            "milestones": [
                {
                    "milestone_id": ms.milestone_id,
                    "name": ms.name,
                    "status": ms.status.value,
                    "progress": ms.progress,
                    "due_date": ms.due_date,
                    "is_overdue": ms.milestone_id in late_ids,
                }
                for ms in project.milestones
            ],
            "tasks_summary": {
                **count_by_status(project.tasks),
                "total": len(project.tasks),
                "overdue": len(overdue),
            },
            "risks": {
                "overdue_tasks": [
                    {"task_id": t.task_id, "title": t.title, "assignee": t.assignee_name, "due_date": t.due_date}
                    for t in overdue
                ],
                "blocked_tasks": [
                    {"task_id": t.task_id, "title": t.title, "reason": t.blocker_note}
                    for t in blocked
                ],
                "overdue_milestones": [
                    {"milestone_id": m.milestone_id, "name": m.name, "due_date": m.due_date}
                    for m in late_milestones
                ],
            },
        }


# -----------------------------------------------------------------------------
# Pure query helpers (shared with the reconciliation loop)
# -----------------------------------------------------------------------------
def dependencies_met(project: Project, task: ProjectTask) -> bool:
    for dep_id in task.dependencies:
        dep = project.get_task(dep_id)
        if dep is None or dep.status != TaskStatus.DONE:
            return False
    return True


def overdue_tasks(project: Project, today: str) -> List[ProjectTask]:
    return [
        t for t in project.tasks
        if t.due_date and t.due_date < today
        and t.status not in (TaskStatus.DONE, TaskStatus.BLOCKED)
    ]


def overdue_milestones(project: Project, today: str) -> List[Milestone]:
    return [
        m for m in project.milestones
        if m.due_date and m.due_date < today and m.status != MilestoneStatus.COMPLETED
    ]


def count_by_status(tasks: List[ProjectTask]) -> Dict[str, int]:
    counts = {status.value: 0 for status in TaskStatus}
    for task in tasks:
        counts[task.status.value] += 1
    return counts
