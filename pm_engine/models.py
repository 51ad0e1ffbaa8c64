"""
Project Data Model

Hierarchical project model: Project -> Milestone -> ProjectTask.

This module provides:
1. LOCKED status enums for projects, milestones, tasks and external work
2. Dataclasses with JSON-safe to_dict/from_dict round-tripping
3. Small helpers shared by the repository, the loop and the hooks

HARD CONSTRAINTS:
- progress fields are derived, never set by callers
- ProgressNote is immutable and append-only
- CANCELLED is terminal for tasks
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def today_str(now: Optional[datetime] = None) -> str:
    """YYYY-MM-DD for date comparisons against due dates."""
    return (now or utcnow()).strftime("%Y-%m-%d")


def generate_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------
class ProjectStatus(str, Enum):
    """Top-level project status."""
    PLANNING = "planning"
    ACTIVE = "active"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class MilestoneStatus(str, Enum):
    """Milestone status, derived from its tasks unless CANCELLED."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TaskStatus(str, Enum):
    """
    Project task status.

    DONE and CANCELLED are terminal. CANCELLED never transitions onward.
    """
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"
    PAUSED = "paused"

    @classmethod
    def terminal_states(cls) -> Set["TaskStatus"]:
        return {cls.DONE, cls.CANCELLED}


class TaskPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class DelegatedStatus(str, Enum):
    """Status values reported by the delegation subsystem."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @classmethod
    def terminal_states(cls) -> Set["DelegatedStatus"]:
        return {cls.COMPLETED, cls.CANCELLED}


class GoalStatus(str, Enum):
    """Dashboard goal status."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Project status -> dashboard goal status
PROJECT_TO_GOAL_STATUS: Dict[ProjectStatus, GoalStatus] = {
    ProjectStatus.ACTIVE: GoalStatus.IN_PROGRESS,
    ProjectStatus.COMPLETED: GoalStatus.COMPLETED,
    ProjectStatus.CANCELLED: GoalStatus.CANCELLED,
    ProjectStatus.ON_HOLD: GoalStatus.PENDING,
    ProjectStatus.PLANNING: GoalStatus.PENDING,
}

# Delegation priority numbers (1 = most urgent)
DELEGATION_PRIORITY: Dict[TaskPriority, int] = {
    TaskPriority.HIGH: 1,
    TaskPriority.MEDIUM: 3,
    TaskPriority.LOW: 5,
}


# -----------------------------------------------------------------------------
# Data Classes
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ProgressNote:
    """Immutable progress note. Appended, never edited or removed."""
    content: str
    updated_by: str
    updated_by_name: str = ""
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "updated_by": self.updated_by,
            "updated_by_name": self.updated_by_name,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProgressNote":
        return cls(
            content=data["content"],
            updated_by=data.get("updated_by", ""),
            updated_by_name=data.get("updated_by_name", ""),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass
class Milestone:
    """Ordered grouping of tasks within a project."""
    milestone_id: str
    name: str
    order: int
    description: str = ""
    status: MilestoneStatus = MilestoneStatus.PENDING
    progress: int = 0
    due_date: Optional[str] = None  # YYYY-MM-DD

    def to_dict(self) -> Dict[str, Any]:
        return {
            "milestone_id": self.milestone_id,
            "name": self.name,
            "order": self.order,
            "description": self.description,
            "status": self.status.value,
            "progress": self.progress,
            "due_date": self.due_date,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Milestone":
        return cls(
            milestone_id=data["milestone_id"],
            name=data["name"],
            order=data.get("order", 0),
            description=data.get("description", ""),
            status=MilestoneStatus(data.get("status", MilestoneStatus.PENDING.value)),
            progress=data.get("progress", 0),
            due_date=data.get("due_date"),
        )


@dataclass
class ProjectTask:
    """
    Atomic unit of work inside a project.

    A task belongs to exactly one milestone and may reference:
    - a delegated unit of work (delegated_task_id)
    - a mirrored operations task (ops_task_id)
    """
    task_id: str
    title: str
    milestone_id: str
    created_at: datetime
    description: str = ""
    assignee_id: Optional[str] = None
    assignee_name: str = ""
    status: TaskStatus = TaskStatus.TODO
    priority: TaskPriority = TaskPriority.MEDIUM
    dependencies: List[str] = field(default_factory=list)
    delegated_task_id: Optional[str] = None
    ops_task_id: Optional[str] = None
    due_date: Optional[str] = None  # YYYY-MM-DD
    estimate_hours: Optional[float] = None
    blocker_note: Optional[str] = None
    cancel_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    progress_notes: List[ProgressNote] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "title": self.title,
            "milestone_id": self.milestone_id,
            "created_at": self.created_at.isoformat(),
            "description": self.description,
            "assignee_id": self.assignee_id,
            "assignee_name": self.assignee_name,
            "status": self.status.value,
            "priority": self.priority.value,
            "dependencies": list(self.dependencies),
            "delegated_task_id": self.delegated_task_id,
            "ops_task_id": self.ops_task_id,
            "due_date": self.due_date,
            "estimate_hours": self.estimate_hours,
            "blocker_note": self.blocker_note,
            "cancel_reason": self.cancel_reason,
            "cancelled_at": _format_dt(self.cancelled_at),
            "paused_at": _format_dt(self.paused_at),
            "completed_at": _format_dt(self.completed_at),
            "progress_notes": [n.to_dict() for n in self.progress_notes],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProjectTask":
        return cls(
            task_id=data["task_id"],
            title=data["title"],
            milestone_id=data["milestone_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            description=data.get("description", ""),
            assignee_id=data.get("assignee_id"),
            assignee_name=data.get("assignee_name", ""),
            status=TaskStatus(data.get("status", TaskStatus.TODO.value)),
            priority=TaskPriority(data.get("priority", TaskPriority.MEDIUM.value)),
            dependencies=list(data.get("dependencies", [])),
            delegated_task_id=data.get("delegated_task_id"),
            ops_task_id=data.get("ops_task_id"),
            due_date=data.get("due_date"),
            estimate_hours=data.get("estimate_hours"),
            blocker_note=data.get("blocker_note"),
            cancel_reason=data.get("cancel_reason"),
            cancelled_at=_parse_dt(data.get("cancelled_at")),
            paused_at=_parse_dt(data.get("paused_at")),
            completed_at=_parse_dt(data.get("completed_at")),
            progress_notes=[ProgressNote.from_dict(n) for n in data.get("progress_notes", [])],
        )


@dataclass
class Project:
    """
    Top-level unit of work owned by one agent.

    Milestones are kept sorted by `order`. Tasks keep insertion order.
    """
    project_id: str
    name: str
    owner_id: str
    created_at: datetime
    updated_at: datetime
    next_standup_at: datetime
    standup_interval_ms: int
    description: str = ""
    owner_name: str = ""
    status: ProjectStatus = ProjectStatus.PLANNING
    goal_id: Optional[str] = None
    progress: int = 0
    milestones: List[Milestone] = field(default_factory=list)
    tasks: List[ProjectTask] = field(default_factory=list)

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------
    def get_task(self, task_id: str) -> Optional[ProjectTask]:
        for task in self.tasks:
            if task.task_id == task_id:
                return task
        return None

    def get_milestone(self, milestone_id: str) -> Optional[Milestone]:
        for milestone in self.milestones:
            if milestone.milestone_id == milestone_id:
                return milestone
        return None

    def tasks_in_milestone(self, milestone_id: str) -> List[ProjectTask]:
        return [t for t in self.tasks if t.milestone_id == milestone_id]

    def sort_milestones(self) -> None:
        self.milestones.sort(key=lambda m: m.order)

    def schedule_next_standup(self, now: datetime) -> datetime:
        self.next_standup_at = now + timedelta(milliseconds=self.standup_interval_ms)
        return self.next_standup_at

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "name": self.name,
            "owner_id": self.owner_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "next_standup_at": self.next_standup_at.isoformat(),
            "standup_interval_ms": self.standup_interval_ms,
            "description": self.description,
            "owner_name": self.owner_name,
            "status": self.status.value,
            "goal_id": self.goal_id,
            "progress": self.progress,
            "milestones": [m.to_dict() for m in self.milestones],
            "tasks": [t.to_dict() for t in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Project":
        return cls(
            project_id=data["project_id"],
            name=data["name"],
            owner_id=data["owner_id"],
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            next_standup_at=datetime.fromisoformat(data["next_standup_at"]),
            standup_interval_ms=data["standup_interval_ms"],
            description=data.get("description", ""),
            owner_name=data.get("owner_name", ""),
            status=ProjectStatus(data.get("status", ProjectStatus.PLANNING.value)),
            goal_id=data.get("goal_id"),
            progress=data.get("progress", 0),
            milestones=[Milestone.from_dict(m) for m in data.get("milestones", [])],
            tasks=[ProjectTask.from_dict(t) for t in data.get("tasks", [])],
        )


# -----------------------------------------------------------------------------
# External Views
# -----------------------------------------------------------------------------
@dataclass
class DelegatedTaskInfo:
    """Snapshot of a delegated unit of work as reported by the delegation subsystem."""
    delegated_task_id: str
    status: DelegatedStatus
    result: Optional[str] = None


@dataclass
class Goal:
    """Dashboard goal a project mirrors its progress and status into."""
    goal_id: str
    progress: int = 0
    status: GoalStatus = GoalStatus.PENDING
    title: str = ""
