"""
Unit Tests for the cascade controller.

Test coverage for:
- Cancel cascade over tasks and milestones
- Idempotence of cancel (no repeated external requests)
- Detached external cancellation (delegated work, operations tasks)
- Deleted targets and already-terminal delegated work
- Pause and resume
"""

import asyncio

import pytest

from pm_engine.cascade import DEFAULT_CANCEL_REASON
from pm_engine.models import MilestoneStatus, TaskStatus


def add_tasks(repository, project, *specs):
    """specs: (title, status, extra fields)"""
    ms_id = project.milestones[0].milestone_id
    tasks = []
    for title, status, extra in specs:
        task = repository.add_task(project.project_id, title, ms_id, **extra)
        if status != "todo":
            repository.update_task(project.project_id, task.task_id, {"status": status})
        tasks.append(task)
    return tasks


class TestCancelCascade:
    """Project cancellation propagates over the subtree."""

    @pytest.mark.asyncio
    async def test_done_task_survives_cancel(self, repository, active_project, cascade):
        """Done task stays done, running task and open milestone are cancelled."""
        done, running = add_tasks(
            repository, active_project,
            ("Done", "done", {}),
            ("Running", "in_progress", {}),
        )

        repository.update_project(active_project.project_id, {"status": "cancelled"})
        await cascade.drain()

        assert done.status == TaskStatus.DONE
        assert running.status == TaskStatus.CANCELLED
        assert running.cancel_reason == DEFAULT_CANCEL_REASON
        assert running.cancelled_at is not None
        assert active_project.milestones[0].status == MilestoneStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_no_open_status_remains(self, repository, active_project, cascade):
        tasks = add_tasks(
            repository, active_project,
            ("Todo", "todo", {}),
            ("Review", "review", {}),
            ("Blocked", "blocked", {}),
            ("Paused", "paused", {}),
        )

        repository.update_project(active_project.project_id, {"status": "cancelled"}, cancel_reason="budget cut")
        await cascade.drain()

        assert {t.status for t in tasks} == {TaskStatus.CANCELLED}
        assert {t.cancel_reason for t in tasks} == {"budget cut"}
        assert all(t.paused_at is None for t in tasks)

    @pytest.mark.asyncio
    async def test_completed_milestone_not_cancelled(self, repository, active_project, cascade):
        pid = active_project.project_id
        finished = repository.add_milestone(pid, "Finished", order=-1)
        repository.update_milestone(pid, finished.milestone_id, {"status": "completed"})

        repository.update_project(pid, {"status": "cancelled"})
        await cascade.drain()

        assert finished.status == MilestoneStatus.COMPLETED
        assert active_project.get_milestone(active_project.milestones[1].milestone_id).status == MilestoneStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_external_work_cancelled_once(self, repository, active_project, cascade, agent_comm, dashboard):
        """Cancelling twice sends no second round of external requests."""
        agent_comm.set_status("dt-1", "in_progress")
        dashboard.ops_tasks["ops-1"] = {"status": "in_progress"}
        add_tasks(
            repository, active_project,
            ("Delegated", "in_progress", {"delegated_task_id": "dt-1", "ops_task_id": "ops-1"}),
        )

        repository.update_project(active_project.project_id, {"status": "cancelled"})
        await cascade.drain()
        assert agent_comm.cancellations == ["dt-1"]
        assert dashboard.ops_updates == [("ops-1", {"status": "cancelled", "cancel_reason": DEFAULT_CANCEL_REASON})]

        newly_cancelled = cascade.cancel(active_project)
        await cascade.drain()
        assert newly_cancelled == []
        assert agent_comm.cancellations == ["dt-1"]
        assert len(dashboard.ops_updates) == 1

    @pytest.mark.asyncio
    async def test_terminal_external_work_skipped(self, repository, active_project, cascade, agent_comm, dashboard):
        agent_comm.set_status("dt-1", "completed")
        dashboard.ops_tasks["ops-1"] = {"status": "done"}
        add_tasks(
            repository, active_project,
            ("Finished elsewhere", "review", {"delegated_task_id": "dt-1", "ops_task_id": "ops-1"}),
        )

        repository.update_project(active_project.project_id, {"status": "cancelled"})
        await cascade.drain()

        assert agent_comm.cancellations == []
        assert dashboard.ops_updates == []

    @pytest.mark.asyncio
    async def test_deleted_project_is_noop_for_background_work(
        self, repository, active_project, cascade, agent_comm
    ):
        agent_comm.set_status("dt-1", "in_progress")
        add_tasks(repository, active_project, ("Delegated", "in_progress", {"delegated_task_id": "dt-1"}))

        # Cancel schedules the external work; the project is gone before it runs.
        repository.update_project(active_project.project_id, {"status": "cancelled"})
        repository.delete_project(active_project.project_id)
        await cascade.drain()

        assert agent_comm.cancellations == []

    @pytest.mark.asyncio
    async def test_port_failure_is_contained(self, repository, active_project, cascade, agent_comm, dashboard):
        async def broken(*args, **kwargs):
            raise ConnectionError("delegation subsystem down")

        agent_comm.find_delegated_task = broken
        dashboard.ops_tasks["ops-1"] = {"status": "todo"}
        add_tasks(
            repository, active_project,
            ("Delegated", "in_progress", {"delegated_task_id": "dt-1", "ops_task_id": "ops-1"}),
        )

        repository.update_project(active_project.project_id, {"status": "cancelled"})
        await cascade.drain()

        assert dashboard.ops_tasks["ops-1"]["status"] == "cancelled"

    def test_sync_caller_work_is_drained(self, repository, active_project, cascade, agent_comm):
        """Cancelling outside an event loop leaves work that drain() still waits for."""
        record_cancellation = agent_comm.request_cancellation

        async def slow_cancellation(delegated_task_id, reason=""):
            await asyncio.sleep(0.05)
            await record_cancellation(delegated_task_id, reason)

        agent_comm.request_cancellation = slow_cancellation
        agent_comm.set_status("dt-1", "in_progress")
        add_tasks(repository, active_project, ("Delegated", "in_progress", {"delegated_task_id": "dt-1"}))

        repository.update_project(active_project.project_id, {"status": "cancelled"})
        asyncio.run(cascade.drain())

        assert agent_comm.cancellations == ["dt-1"]


class TestPauseResume:
    def test_pause_only_touches_in_progress(self, repository, active_project, cascade):
        running, todo, review = add_tasks(
            repository, active_project,
            ("Running", "in_progress", {}),
            ("Todo", "todo", {}),
            ("Review", "review", {}),
        )

        paused = cascade.pause(active_project)

        assert paused == [running]
        assert running.status == TaskStatus.PAUSED
        assert todo.status == TaskStatus.TODO
        assert review.status == TaskStatus.REVIEW

    def test_pause_is_idempotent(self, repository, active_project, cascade):
        add_tasks(repository, active_project, ("Running", "in_progress", {}))
        cascade.pause(active_project)
        assert cascade.pause(active_project) == []

    def test_resume(self, repository, active_project, cascade):
        running, = add_tasks(repository, active_project, ("Running", "in_progress", {}))
        cascade.pause(active_project)

        assert cascade.resume(active_project) == [running]
        assert running.status == TaskStatus.IN_PROGRESS
        assert running.paused_at is None

    def test_cancelled_project_never_resumes_tasks(self, repository, active_project):
        running, = add_tasks(repository, active_project, ("Running", "in_progress", {}))
        pid = active_project.project_id
        repository.update_project(pid, {"status": "on_hold"})
        repository.update_project(pid, {"status": "cancelled"})
        repository.update_project(pid, {"status": "active"})

        assert running.status == TaskStatus.CANCELLED
