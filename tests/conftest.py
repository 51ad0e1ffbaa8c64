"""
Pytest configuration for project engine tests.

This module provides:
1. In-memory fakes for every collaborator port
2. A controllable clock
3. Fixtures wiring repository, cascade, loop, hooks and workflow together
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from pm_engine.cascade import CascadeController
from pm_engine.external_hooks import ExternalHooks
from pm_engine.models import DelegatedStatus, DelegatedTaskInfo, Goal, GoalStatus
from pm_engine.persistence import InMemoryPersistence
from pm_engine.ports import AgentCommunicationPort, DashboardPort, MessagingPort
from pm_engine.project_repository import ProjectRepository
from pm_engine.reconciliation_loop import ReconciliationLoop
from pm_engine.workflow import ProjectWorkflow


# -----------------------------------------------------------------------------
# Fake Ports
# -----------------------------------------------------------------------------
class FakeAgentComm(AgentCommunicationPort):
    """Delegation subsystem held in a dict."""

    def __init__(self):
        self.tasks: Dict[str, DelegatedTaskInfo] = {}
        self.cancellations: List[str] = []
        self.delegations: List[Dict[str, Any]] = []
        self.fail_delegation = False

    def set_status(self, delegated_task_id: str, status: str, result: Optional[str] = None):
        self.tasks[delegated_task_id] = DelegatedTaskInfo(
            delegated_task_id=delegated_task_id,
            status=DelegatedStatus(status),
            result=result,
        )

    async def find_delegated_task(self, delegated_task_id):
        return self.tasks.get(delegated_task_id)

    async def request_cancellation(self, delegated_task_id, reason=""):
        self.cancellations.append(delegated_task_id)
        self.set_status(delegated_task_id, "cancelled")

    async def delegate_task(self, from_agent, to_agent, description, priority=3):
        if self.fail_delegation:
            raise ConnectionError("delegation channel down")
        delegated_id = f"dt-{len(self.delegations) + 1}"
        self.delegations.append({
            "id": delegated_id,
            "from": from_agent,
            "to": to_agent,
            "description": description,
            "priority": priority,
        })
        self.set_status(delegated_id, "pending")
        return delegated_id


class FakeDashboard(DashboardPort):
    """Goals and operations tasks held in dicts; records every write."""

    def __init__(self):
        self.goals: Dict[str, Goal] = {}
        self.ops_tasks: Dict[str, Dict[str, Any]] = {}
        self.goal_updates: List[tuple] = []
        self.ops_updates: List[tuple] = []
        self.failing_goals: set = set()

    def add_goal(self, goal_id: str, progress: int = 0, status: str = "pending") -> Goal:
        goal = Goal(goal_id=goal_id, progress=progress, status=GoalStatus(status))
        self.goals[goal_id] = goal
        return goal

    async def get_goal(self, goal_id):
        if goal_id in self.failing_goals:
            raise RuntimeError(f"dashboard unavailable for {goal_id}")
        return self.goals.get(goal_id)

    async def update_goal(self, goal_id, fields):
        self.goal_updates.append((goal_id, dict(fields)))
        goal = self.goals[goal_id]
        if "progress" in fields:
            goal.progress = fields["progress"]
        if "status" in fields:
            goal.status = GoalStatus(fields["status"])

    async def get_ops_task(self, ops_task_id):
        return self.ops_tasks.get(ops_task_id)

    async def update_ops_task(self, ops_task_id, fields):
        self.ops_updates.append((ops_task_id, dict(fields)))
        self.ops_tasks.setdefault(ops_task_id, {}).update(fields)


class FakeMessenger(MessagingPort):
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def send_to_owner(self, owner_id, text, **opts):
        self.sent.append({"owner_id": owner_id, "text": text, **opts})

    def of_kind(self, kind: str) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m.get("kind") == kind]


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def persistence():
    return InMemoryPersistence()


@pytest.fixture
def agent_comm():
    return FakeAgentComm()


@pytest.fixture
def dashboard():
    return FakeDashboard()


@pytest.fixture
def messenger():
    return FakeMessenger()


@pytest.fixture
def cascade(agent_comm, dashboard):
    return CascadeController(agent_comm=agent_comm, dashboard=dashboard)


@pytest.fixture
def repository(persistence, cascade, clock):
    return ProjectRepository(persistence, cascade=cascade, clock=clock)


@pytest.fixture
def loop(repository, agent_comm, dashboard, messenger):
    return ReconciliationLoop(
        repository,
        agent_comm=agent_comm,
        dashboard=dashboard,
        messaging=messenger,
        interval_seconds=0.01,
        startup_delay_seconds=0,
    )


@pytest.fixture
def hooks(repository, dashboard):
    return ExternalHooks(repository, dashboard=dashboard)


@pytest.fixture
def workflow(repository, agent_comm):
    return ProjectWorkflow(repository, agent_comm=agent_comm)


@pytest.fixture
def project(repository):
    """Planning project 'Launch' owned by agent-owner with one milestone."""
    project = repository.create_project("Launch", "agent-owner", owner_name="Owner")
    repository.add_milestone(project.project_id, "Build", order=0)
    return project


@pytest.fixture
def active_project(repository, project):
    repository.update_project(project.project_id, {"status": "active"})
    return project

