"""
Project Engine

In-process project management core: projects, ordered milestones and tasks
with derived progress, status cascades, and a reconciliation loop that keeps
tasks in step with externally delegated work.

Components:
- ProjectRepository: source of truth, persistence, subscriptions, queries
- CascadeController: cancel / pause / resume across a project's subtree
- ReconciliationLoop: periodic sync, dashboard mirror, issues, standups
- ExternalHooks: event-driven status updates from delegation and operations
- ProjectWorkflow: project start and task assignment with delegation
"""

__version__ = "1.0.0"

from .cascade import CascadeController
from .config import EngineConfig
from .errors import (
    DeleteRejectedError,
    PersistenceError,
    PMError,
    ProjectNotFoundError,
    TaskNotFoundError,
    ValidationError,
)
from .external_hooks import ExternalHooks
from .models import (
    DelegatedStatus,
    DelegatedTaskInfo,
    Goal,
    GoalStatus,
    Milestone,
    MilestoneStatus,
    ProgressNote,
    Project,
    ProjectStatus,
    ProjectTask,
    TaskPriority,
    TaskStatus,
)
from .persistence import InMemoryPersistence, JsonFilePersistence
from .ports import AgentCommunicationPort, DashboardPort, MessagingPort, PersistencePort
from .project_repository import ProjectRepository
from .reconciliation_loop import ReconciliationLoop
from .workflow import ProjectWorkflow

__all__ = [
    "__version__",
    "AgentCommunicationPort",
    "CascadeController",
    "DashboardPort",
    "DelegatedStatus",
    "DelegatedTaskInfo",
    "DeleteRejectedError",
    "EngineConfig",
    "ExternalHooks",
    "Goal",
    "GoalStatus",
    "InMemoryPersistence",
    "JsonFilePersistence",
    "MessagingPort",
    "Milestone",
    "MilestoneStatus",
    "PersistenceError",
    "PersistencePort",
    "PMError",
    "ProgressNote",
    "Project",
    "ProjectNotFoundError",
    "ProjectRepository",
    "ProjectStatus",
    "ProjectTask",
    "ProjectWorkflow",
    "ReconciliationLoop",
    "TaskNotFoundError",
    "TaskPriority",
    "TaskStatus",
    "ValidationError",
]
