"""
Reconciliation Loop

Periodic control loop that keeps every ACTIVE project consistent with
externally delegated work, mirrors it to the dashboard, detects issues and
drives scheduled standups.

Per project, per tick:
    1. SyncDelegatedStatus   - delegated status -> task status (forward-only)
    2. CheckDependencies     - advisory note on dependency-ready todo tasks
    3. RecalculateProgress   - milestones, project, ACTIVE -> COMPLETED
    4. MirrorToDashboard     - write differing goal fields only
    5. DetectIssues          - overdue tasks, blocked tasks, overdue milestones
    6. StandupCheck          - report to owner, advance next_standup_at
    7. ProgressNotification  - notify owner on significant change

IMPORTANT:
- Ticks never overlap (tick lock); a tick always runs to completion
- A failure in one project never stops the others in the same tick
- The progress snapshot lives in memory only; after a restart the first
  tick seeds it instead of notifying
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set

from .config import DEFAULT_CHECK_INTERVAL, DEFAULT_PROGRESS_THRESHOLD, DEFAULT_STARTUP_DELAY
from .models import (
    DelegatedStatus,
    Project,
    ProjectStatus,
    PROJECT_TO_GOAL_STATUS,
    TaskStatus,
    today_str,
)
from .notifications import (
    DEPENDENCIES_READY_NOTE,
    SYSTEM_AUTHOR_ID,
    SYSTEM_AUTHOR_NAME,
    ProjectIssues,
    build_standup_report,
    completed_milestone_ids,
    delegated_failure_note,
    progress_change_message,
)
from .ports import AgentCommunicationPort, DashboardPort, MessagingPort
from .project_repository import (
    ProjectRepository,
    dependencies_met,
    overdue_milestones,
    overdue_tasks,
)

logger = logging.getLogger("reconciliation_loop")


# -----------------------------------------------------------------------------
# Shared transition rules (also used by the external hooks)
# -----------------------------------------------------------------------------
def map_delegated_status(current: TaskStatus, delegated: DelegatedStatus) -> Optional[TaskStatus]:
    """
    Forward-only mapping from a delegated status to a task status.

    completed   -> review (never directly to done)
    in_progress -> in_progress, only from todo
    failed      -> blocked

    Returns None when the task must not change. Tasks in review, done or
    cancelled are never regressed.
    """
    if current in (TaskStatus.REVIEW, TaskStatus.DONE, TaskStatus.CANCELLED):
        return None

    if delegated == DelegatedStatus.COMPLETED:
        return TaskStatus.REVIEW
    if delegated == DelegatedStatus.IN_PROGRESS and current == TaskStatus.TODO:
        return TaskStatus.IN_PROGRESS
    if delegated == DelegatedStatus.FAILED and current != TaskStatus.BLOCKED:
        return TaskStatus.BLOCKED
    return None


async def mirror_to_dashboard(dashboard: Optional[DashboardPort], project: Project) -> Dict[str, Any]:
    """Write only the goal fields that differ. Returns the fields written."""
    if dashboard is None or not project.goal_id:
        return {}

    goal = await dashboard.get_goal(project.goal_id)
    if goal is None:
        logger.warning(f"Goal {project.goal_id} for project {project.project_id} not found")
        return {}

    fields: Dict[str, Any] = {}
    if goal.progress != project.progress:
        fields["progress"] = project.progress
    mapped = PROJECT_TO_GOAL_STATUS[project.status]
    if goal.status != mapped:
        fields["status"] = mapped.value

    if fields:
        await dashboard.update_goal(project.goal_id, fields)
        logger.debug(f"Mirrored project {project.project_id} to goal {project.goal_id}: {fields}")
    return fields


# -----------------------------------------------------------------------------
# Loop
# -----------------------------------------------------------------------------
class ReconciliationLoop:
    """
    Drives reconciliation ticks over active projects.

    Restartable: start/stop may be called any number of times, e.g. across
    workspace switches.
    """

    def __init__(
        self,
        repository: ProjectRepository,
        agent_comm: Optional[AgentCommunicationPort] = None,
        dashboard: Optional[DashboardPort] = None,
        messaging: Optional[MessagingPort] = None,
        interval_seconds: float = DEFAULT_CHECK_INTERVAL,
        startup_delay_seconds: float = DEFAULT_STARTUP_DELAY,
        progress_threshold: int = DEFAULT_PROGRESS_THRESHOLD,
    ):
        self._repository = repository
        self._agent_comm = agent_comm
        self._dashboard = dashboard
        self._messaging = messaging
        self._interval = interval_seconds
        self._startup_delay = startup_delay_seconds
        self._threshold = progress_threshold

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._tick_lock = asyncio.Lock()
        self._last_progress: Dict[str, int] = {}
        self._last_completed: Dict[str, Set[str]] = {}
        self.tick_count = 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    async def start(
        self,
        interval_seconds: Optional[float] = None,
        startup_delay_seconds: Optional[float] = None,
    ) -> bool:
        """Start ticking. Returns False if already running."""
        if self._running:
            logger.debug("Reconciliation loop already running")
            return False

        interval = interval_seconds if interval_seconds is not None else self._interval
        delay = startup_delay_seconds if startup_delay_seconds is not None else self._startup_delay

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(interval, delay))
        logger.info(f"Reconciliation loop started (interval={interval}s, startup delay={delay}s)")
        return True

    async def stop(self) -> None:
        """Stop ticking. Waits for an in-flight tick to finish. Idempotent."""
        if not self._running and self._task is None:
            return

        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            try:
                await self._task
            except Exception as e:
                logger.error(f"Reconciliation loop ended with error: {e}")
            self._task = None

        self.reset_snapshot()
        logger.info("Reconciliation loop stopped")

    def reset_snapshot(self) -> None:
        self._last_progress.clear()
        self._last_completed.clear()

    async def _wait(self, seconds: float) -> bool:
        """Sleep until the timeout or a stop request. True if stopping."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=max(0.0, seconds))
            return True
        except asyncio.TimeoutError:
            return False

    async def _run_loop(self, interval: float, delay: float) -> None:
        if await self._wait(delay):
            return

        loop = asyncio.get_running_loop()
        next_run = loop.time()
        while self._running:
            try:
                await self.run_tick()
            except Exception as e:
                logger.error(f"Reconciliation tick failed: {e}")

            next_run = max(next_run + interval, loop.time())
            if await self._wait(next_run - loop.time()):
                return

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    async def run_tick(self) -> int:
        """
        Run one reconciliation pass over all ACTIVE projects.

        Returns the number of projects processed; 0 if a tick is already
        in flight.
        """
        if self._tick_lock.locked():
            logger.warning("Previous reconciliation tick still running, skipping")
            return 0

        async with self._tick_lock:
            self.tick_count += 1
            projects = self._repository.get_projects(status=ProjectStatus.ACTIVE)
            processed = 0
            for project in projects:
                try:
                    await self.check_project(project.project_id)
                    processed += 1
                except Exception as e:
                    logger.error(f"Reconciliation failed for project {project.project_id}: {e}")
            return processed

    async def check_project(self, project_id: str) -> None:
        """Run the seven reconciliation steps for one project."""
        async with self._repository.project_lock(project_id):
            project = self._repository.get_project(project_id)
            if project is None or project.status != ProjectStatus.ACTIVE:
                return

            prev_progress = self._last_progress.get(project_id, project.progress)
            prev_completed = self._last_completed.get(project_id, set(completed_milestone_ids(project)))

            await self._sync_delegated_statuses(project)
            self._check_dependencies(project)
            new_progress = self._repository.recalculate_progress(project_id)

            try:
                await mirror_to_dashboard(self._dashboard, project)
            except Exception as e:
                logger.error(f"Dashboard mirror failed for project {project_id}: {e}")

            issues = self.detect_issues(project)

            if self._repository.now() >= project.next_standup_at:
                await self._perform_standup(project, issues)

            now_completed = set(completed_milestone_ids(project))
            await self._notify_progress_change(
                project, prev_progress, new_progress, now_completed - prev_completed
            )

            self._last_progress[project_id] = new_progress
            self._last_completed[project_id] = now_completed

    # -------------------------------------------------------------------------
    # 1. Delegated status sync
    # -------------------------------------------------------------------------

    async def _sync_delegated_statuses(self, project: Project) -> None:
        if self._agent_comm is None:
            return

        for task in list(project.tasks):
            if not task.delegated_task_id or task.status in TaskStatus.terminal_states():
                continue

            try:
                info = await self._agent_comm.find_delegated_task(task.delegated_task_id)
            except Exception as e:
                logger.error(f"Failed to fetch delegated task {task.delegated_task_id}: {e}")
                continue
            if info is None:
                continue

            new_status = map_delegated_status(task.status, info.status)
            if new_status is None:
                continue

            updates: Dict[str, Any] = {"status": new_status}
            if new_status == TaskStatus.BLOCKED:
                updates["blocker_note"] = delegated_failure_note(info.result)
            self._repository.update_task(project.project_id, task.task_id, updates)

            logger.debug(
                f"Synced task {task.task_id} '{task.title}' -> {new_status.value} "
                f"(delegated {task.delegated_task_id} is {info.status.value})"
            )

    # -------------------------------------------------------------------------
    # 2. Dependency readiness
    # -------------------------------------------------------------------------

    def _check_dependencies(self, project: Project) -> List[str]:
        """Append an advisory note to every dependency-ready todo task."""
        noted = []
        for task in list(project.tasks):
            if task.status != TaskStatus.TODO or not task.dependencies:
                continue
            if not dependencies_met(project, task):
                continue

            self._repository.add_progress_note(
                project.project_id,
                task.task_id,
                DEPENDENCIES_READY_NOTE,
                SYSTEM_AUTHOR_ID,
                SYSTEM_AUTHOR_NAME,
            )
            noted.append(task.task_id)
        return noted

    # -------------------------------------------------------------------------
    # 5. Issue detection
    # -------------------------------------------------------------------------

    def detect_issues(self, project: Project) -> ProjectIssues:
        today = today_str(self._repository.now())
        issues = ProjectIssues(
            overdue_tasks=overdue_tasks(project, today),
            blocked_tasks=[t for t in project.tasks if t.status == TaskStatus.BLOCKED],
            overdue_milestones=overdue_milestones(project, today),
        )
        if issues.has_issues:
            logger.warning(
                f"Project {project.name}: {len(issues.overdue_tasks)} overdue tasks, "
                f"{len(issues.blocked_tasks)} blocked tasks, "
                f"{len(issues.overdue_milestones)} overdue milestones"
            )
        return issues

    # -------------------------------------------------------------------------
    # 6. Standup
    # -------------------------------------------------------------------------

    async def _perform_standup(self, project: Project, issues: ProjectIssues) -> None:
        report = build_standup_report(project, issues)
        logger.info(f"Standup for project {project.name} -> {project.owner_id}")

        if self._messaging is not None:
            try:
                await self._messaging.send_to_owner(
                    project.owner_id,
                    report.render(),
                    kind="standup",
                    project_id=project.project_id,
                    report=report.to_dict(),
                )
            except Exception as e:
                logger.error(f"Standup delivery to {project.owner_id} failed: {e}")

        next_at = self._repository.now() + timedelta(milliseconds=project.standup_interval_ms)
        self._repository.update_project(project.project_id, {"next_standup_at": next_at})

    # -------------------------------------------------------------------------
    # 7. Progress change notification
    # -------------------------------------------------------------------------

    async def _notify_progress_change(
        self,
        project: Project,
        prev_progress: int,
        new_progress: int,
        newly_completed: Set[str],
    ) -> None:
        significant = abs(new_progress - prev_progress) >= self._threshold
        just_completed = new_progress >= 100 > prev_progress
        if not (significant or just_completed or newly_completed):
            return

        milestones = [m for m in project.milestones if m.milestone_id in newly_completed]
        message = progress_change_message(project, prev_progress, new_progress, milestones)
        logger.info(f"Progress notification for {project.name}: {prev_progress}% -> {new_progress}%")

        if self._messaging is None:
            return
        try:
            await self._messaging.send_to_owner(
                project.owner_id,
                message,
                kind="progress",
                project_id=project.project_id,
            )
        except Exception as e:
            logger.error(f"Progress notification to {project.owner_id} failed: {e}")
