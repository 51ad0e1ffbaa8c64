"""Abstract collaborator ports consumed by the project engine.

The engine depends only on these interfaces. Concrete implementations live
in the delegation subsystem, the operations dashboard, the chat layer, or
in `pm_engine.adapters` / `pm_engine.persistence`.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from .models import DelegatedTaskInfo, Goal


class AgentCommunicationPort(ABC):
    """Delegation subsystem: tracks work handed off to other agents."""

    @abstractmethod
    async def find_delegated_task(self, delegated_task_id: str) -> Optional[DelegatedTaskInfo]:
        """Current status of a delegated task, or None if unknown."""

    @abstractmethod
    async def request_cancellation(self, delegated_task_id: str, reason: str = "") -> None:
        """Ask the delegation subsystem to cancel. Idempotent on terminal tasks."""

    @abstractmethod
    async def delegate_task(
        self,
        from_agent: str,
        to_agent: str,
        description: str,
        priority: int = 3,
    ) -> Optional[str]:
        """Hand off work to another agent. Returns the delegated task id."""


class DashboardPort(ABC):
    """Operations dashboard: goals and mirrored operations tasks."""

    @abstractmethod
    async def get_goal(self, goal_id: str) -> Optional[Goal]:
        ...

    @abstractmethod
    async def update_goal(self, goal_id: str, fields: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def get_ops_task(self, ops_task_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def update_ops_task(self, ops_task_id: str, fields: Dict[str, Any]) -> None:
        ...


class MessagingPort(ABC):
    """Delivers text to a project owner's channel."""

    @abstractmethod
    async def send_to_owner(self, owner_id: str, text: str, **opts: Any) -> None:
        ...


class PersistencePort(ABC):
    """Load/save contract for the full serializable project collection."""

    @abstractmethod
    def load(self) -> Dict[str, Any]:
        """Return the stored state, `{"version": 1, "projects": [...]}`."""

    @abstractmethod
    def save(self, state: Dict[str, Any]) -> None:
        """Durably store the full state. Raises PersistenceError on failure."""
