"""
Cascade Controller

Applies the side effects of a top-level project status change across the
owned subtree and to externally linked work.

Two phases per cascade:
1. Synchronous in-process update (tasks, milestones) while the repository
   holds its lock
2. Detached background work for external ports (delegation subsystem,
   operations mirror), spawned after the state update returns

HARD CONSTRAINTS:
- cancel and pause are idempotent: a second run changes nothing and
  schedules no external work
- DONE tasks are never cancelled, COMPLETED milestones are never cancelled
- Background work no-ops if the project or task was deleted meanwhile
"""

import asyncio
import logging
import threading
from typing import Coroutine, List, Optional, Set, Tuple

from .models import (
    DelegatedStatus,
    MilestoneStatus,
    Project,
    ProjectTask,
    TaskStatus,
    utcnow,
)
from .ports import AgentCommunicationPort, DashboardPort

logger = logging.getLogger("cascade_controller")

DEFAULT_CANCEL_REASON = "project cancelled"


class CascadeController:
    """Propagates cancel / pause / resume from a project to its subtree."""

    def __init__(
        self,
        agent_comm: Optional[AgentCommunicationPort] = None,
        dashboard: Optional[DashboardPort] = None,
    ):
        self._agent_comm = agent_comm
        self._dashboard = dashboard
        self._repository = None
        self._background: Set[asyncio.Task] = set()
        self._threads: Set[threading.Thread] = set()
        self._threads_lock = threading.Lock()

    def attach(self, repository) -> None:
        """Bind the repository used to re-resolve targets in background work."""
        self._repository = repository

    # -------------------------------------------------------------------------
    # Cancel
    # -------------------------------------------------------------------------

    def cancel(self, project: Project, reason: Optional[str] = None) -> List[ProjectTask]:
        """
        Cancel every unfinished task and every non-completed milestone.

        Returns the tasks cancelled by this call (empty on a repeat call).
        """
        reason = reason or DEFAULT_CANCEL_REASON
        now = self._now()

        cancelled: List[ProjectTask] = []
        for task in project.tasks:
            if task.status in TaskStatus.terminal_states():
                continue
            task.status = TaskStatus.CANCELLED
            task.cancelled_at = now
            task.cancel_reason = reason
            task.paused_at = None
            cancelled.append(task)

        for milestone in project.milestones:
            if milestone.status not in (MilestoneStatus.COMPLETED, MilestoneStatus.CANCELLED):
                milestone.status = MilestoneStatus.CANCELLED

        if not cancelled:
            logger.debug(f"Cancel cascade on {project.project_id}: nothing left to cancel")
            return cancelled

        logger.info(
            f"Cancel cascade on {project.project_id}: {len(cancelled)} tasks cancelled ({reason})"
        )

        delegated = [(t.task_id, t.delegated_task_id) for t in cancelled if t.delegated_task_id]
        mirrored = [(t.task_id, t.ops_task_id) for t in cancelled if t.ops_task_id]
        if delegated or mirrored:
            self._spawn(self._cancel_external(project.project_id, delegated, mirrored, reason))

        return cancelled

    async def _cancel_external(
        self,
        project_id: str,
        delegated: List[Tuple[str, str]],
        mirrored: List[Tuple[str, str]],
        reason: str,
    ) -> None:
        if self._agent_comm is not None:
            for task_id, delegated_id in delegated:
                if not self._target_exists(project_id, task_id):
                    continue
                try:
                    info = await self._agent_comm.find_delegated_task(delegated_id)
                    if info is None or info.status in DelegatedStatus.terminal_states():
                        continue
                    await self._agent_comm.request_cancellation(delegated_id, reason)
                    logger.debug(f"Requested cancellation of delegated task {delegated_id}")
                except Exception as e:
                    logger.error(f"Failed to cancel delegated task {delegated_id}: {e}")

        if self._dashboard is not None:
            for task_id, ops_id in mirrored:
                if not self._target_exists(project_id, task_id):
                    continue
                try:
                    ops_task = await self._dashboard.get_ops_task(ops_id)
                    if ops_task is None or ops_task.get("status") in ("done", "cancelled"):
                        continue
                    await self._dashboard.update_ops_task(
                        ops_id, {"status": "cancelled", "cancel_reason": reason}
                    )
                    logger.debug(f"Mirrored cancellation to operations task {ops_id}")
                except Exception as e:
                    logger.error(f"Failed to cancel operations task {ops_id}: {e}")

    # -------------------------------------------------------------------------
    # Pause / Resume
    # -------------------------------------------------------------------------

    def pause(self, project: Project) -> List[ProjectTask]:
        """Pause IN_PROGRESS tasks only. Returns the tasks paused by this call."""
        now = self._now()
        paused = []
        for task in project.tasks:
            if task.status == TaskStatus.IN_PROGRESS:
                task.status = TaskStatus.PAUSED
                task.paused_at = now
                paused.append(task)

        if paused:
            logger.info(f"Pause cascade on {project.project_id}: {len(paused)} tasks paused")
        return paused

    def resume(self, project: Project) -> List[ProjectTask]:
        """Move PAUSED tasks back to IN_PROGRESS."""
        resumed = []
        for task in project.tasks:
            if task.status == TaskStatus.PAUSED:
                task.status = TaskStatus.IN_PROGRESS
                task.paused_at = None
                resumed.append(task)

        if resumed:
            logger.info(f"Resumed {len(resumed)} paused tasks on {project.project_id}")
        return resumed

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _now(self):
        if self._repository is not None:
            return self._repository.now()
        return utcnow()

    def _target_exists(self, project_id: str, task_id: str) -> bool:
        if self._repository is None:
            return True
        project = self._repository.get_project(project_id)
        if project is None or project.get_task(task_id) is None:
            logger.warning(f"Cascade target {project_id}/{task_id} no longer exists, skipping")
            return False
        return True

    def _spawn(self, coro: Coroutine) -> None:
        """Run external side effects without blocking the caller."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            thread = threading.Thread(target=self._run_detached, args=(coro,), daemon=True)
            with self._threads_lock:
                self._threads.add(thread)
            thread.start()
            return

        task = loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _run_detached(self, coro: Coroutine) -> None:
        """Thread body for work spawned outside an event loop."""
        try:
            asyncio.run(coro)
        finally:
            with self._threads_lock:
                self._threads.discard(threading.current_thread())

    async def drain(self) -> None:
        """Wait for in-flight background work (shutdown and tests)."""
        while True:
            with self._threads_lock:
                threads = list(self._threads)
            if not self._background and not threads:
                return
            if self._background:
                await asyncio.gather(*list(self._background), return_exceptions=True)
            for thread in threads:
                await asyncio.to_thread(thread.join)
