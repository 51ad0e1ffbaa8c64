"""
Unit Tests for the external hooks.

Test coverage for:
- Delegated status events applied immediately
- Review approval / rejection
- Operations-task status mirror
- Soft no-ops on unresolved references and unexpected states
- Hooks never raise
- Serialization against a running reconciliation tick
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from pm_engine.models import TaskStatus


def ms_id(project) -> str:
    return project.milestones[0].milestone_id


@pytest.fixture
def delegated_task(repository, active_project):
    repository.add_task(active_project.project_id, "Other", ms_id(active_project))
    return repository.add_task(
        active_project.project_id, "Delegated", ms_id(active_project), delegated_task_id="dt-1"
    )


class TestDelegatedStatusHook:
    """Delegated task moves through to done."""

    @pytest.mark.asyncio
    async def test_full_delegated_lifecycle(self, hooks, delegated_task, clock):
        await hooks.on_delegated_task_status_change("dt-1", "in_progress")
        assert delegated_task.status == TaskStatus.IN_PROGRESS

        await hooks.on_delegated_task_status_change("dt-1", "completed")
        assert delegated_task.status == TaskStatus.REVIEW

        clock.advance(minutes=10)
        result = await hooks.on_task_review_approved("dt-1")
        assert result is delegated_task
        assert delegated_task.status == TaskStatus.DONE
        assert delegated_task.completed_at == clock()

    @pytest.mark.asyncio
    async def test_recalculates_and_mirrors(self, repository, hooks, dashboard, clock):
        dashboard.add_goal("goal-1", status="in_progress")
        project = repository.create_project("Launch", "agent-owner", goal_id="goal-1")
        milestone = repository.add_milestone(project.project_id, "Build")
        repository.update_project(project.project_id, {"status": "active"})
        repository.add_task(project.project_id, "Other", milestone.milestone_id)
        repository.add_task(project.project_id, "Delegated", milestone.milestone_id, delegated_task_id="dt-1")

        await hooks.on_delegated_task_status_change("dt-1", "completed")
        await hooks.on_task_review_approved("dt-1")

        assert project.progress == 50
        assert dashboard.goals["goal-1"].progress == 50

    @pytest.mark.asyncio
    async def test_failed_blocks_with_note(self, hooks, delegated_task):
        await hooks.on_delegated_task_status_change("dt-1", "failed", result="timeout")
        assert delegated_task.status == TaskStatus.BLOCKED
        assert "timeout" in delegated_task.blocker_note

    @pytest.mark.asyncio
    async def test_done_never_regresses(self, repository, hooks, delegated_task, active_project):
        repository.update_task(active_project.project_id, delegated_task.task_id, {"status": "done"})
        assert await hooks.on_delegated_task_status_change("dt-1", "completed") is None
        assert delegated_task.status == TaskStatus.DONE

    @pytest.mark.asyncio
    async def test_unknown_reference_is_noop(self, hooks):
        assert await hooks.on_delegated_task_status_change("dt-unknown", "completed") is None

    @pytest.mark.asyncio
    async def test_invalid_status_is_swallowed(self, hooks, delegated_task):
        assert await hooks.on_delegated_task_status_change("dt-1", "exploded") is None
        assert delegated_task.status == TaskStatus.TODO

    @pytest.mark.asyncio
    async def test_internal_failure_never_raises(self, repository, hooks, delegated_task, monkeypatch):
        monkeypatch.setattr(repository, "update_task", MagicMock(side_effect=RuntimeError("disk gone")))
        assert await hooks.on_delegated_task_status_change("dt-1", "completed") is None


class TestReviewHooks:
    @pytest.mark.asyncio
    async def test_approval_requires_review(self, hooks, delegated_task):
        assert await hooks.on_task_review_approved("dt-1") is None
        assert delegated_task.status == TaskStatus.TODO

    @pytest.mark.asyncio
    async def test_rejection_returns_to_in_progress(self, hooks, delegated_task):
        await hooks.on_delegated_task_status_change("dt-1", "completed")

        await hooks.on_task_review_rejected("dt-1", feedback="missing tests")

        assert delegated_task.status == TaskStatus.IN_PROGRESS
        assert delegated_task.progress_notes[-1].content == "Review rejected: missing tests"

    @pytest.mark.asyncio
    async def test_rejection_outside_review_is_noop(self, hooks, delegated_task):
        assert await hooks.on_task_review_rejected("dt-1") is None
        assert delegated_task.status == TaskStatus.TODO

    @pytest.mark.asyncio
    async def test_unknown_reference_is_noop(self, hooks):
        assert await hooks.on_task_review_approved("dt-unknown") is None
        assert await hooks.on_task_review_rejected("dt-unknown") is None


class TestOpsTaskHook:
    """Operations task status mirror."""

    @pytest.mark.asyncio
    async def test_maps_status_and_adds_note(self, repository, hooks, active_project):
        task = repository.add_task(active_project.project_id, "Mirrored", ms_id(active_project), ops_task_id="ops-1")
        repository.add_task(active_project.project_id, "Other", ms_id(active_project))

        await hooks.on_ops_task_status_change("ops-1", "in_progress")
        assert task.status == TaskStatus.IN_PROGRESS
        assert "todo -> in_progress" in task.progress_notes[-1].content

        await hooks.on_ops_task_status_change("ops-1", "cancelled")
        assert task.status == TaskStatus.BLOCKED

        await hooks.on_ops_task_status_change("ops-1", "done")
        assert task.status == TaskStatus.DONE
        assert active_project.progress == 50

    @pytest.mark.asyncio
    async def test_planning_project_is_synced(self, repository, hooks, project):
        task = repository.add_task(project.project_id, "Mirrored", ms_id(project), ops_task_id="ops-1")
        await hooks.on_ops_task_status_change("ops-1", "review")
        assert task.status == TaskStatus.REVIEW

    @pytest.mark.asyncio
    async def test_on_hold_project_is_ignored(self, repository, hooks, active_project):
        task = repository.add_task(active_project.project_id, "Mirrored", ms_id(active_project), ops_task_id="ops-1")
        repository.update_project(active_project.project_id, {"status": "on_hold"})

        assert await hooks.on_ops_task_status_change("ops-1", "done") is None
        assert task.status == TaskStatus.TODO

    @pytest.mark.asyncio
    async def test_terminal_task_untouched(self, repository, hooks, active_project):
        task = repository.add_task(active_project.project_id, "Mirrored", ms_id(active_project), ops_task_id="ops-1")
        repository.update_task(active_project.project_id, task.task_id, {"status": "cancelled"})

        assert await hooks.on_ops_task_status_change("ops-1", "in_progress") is None
        assert task.status == TaskStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_unmapped_status_and_unknown_task(self, repository, hooks, active_project):
        repository.add_task(active_project.project_id, "Mirrored", ms_id(active_project), ops_task_id="ops-1")
        assert await hooks.on_ops_task_status_change("ops-1", "archived") is None
        assert await hooks.on_ops_task_status_change("ops-unknown", "done") is None


class TestLoopSerialization:
    """Hooks and the reconciliation tick never interleave on one project."""

    @pytest.mark.asyncio
    async def test_hook_waits_for_running_tick(self, loop, hooks, agent_comm, active_project, delegated_task):
        agent_comm.set_status("dt-1", "in_progress")
        entered = asyncio.Event()
        release = asyncio.Event()
        lookup = agent_comm.find_delegated_task

        async def blocking_lookup(delegated_task_id):
            entered.set()
            await release.wait()
            return await lookup(delegated_task_id)

        agent_comm.find_delegated_task = blocking_lookup

        tick = asyncio.create_task(loop.check_project(active_project.project_id))
        await entered.wait()
        hook = asyncio.create_task(hooks.on_delegated_task_status_change("dt-1", "completed"))
        await asyncio.sleep(0.05)
        assert not hook.done()
        assert delegated_task.status == TaskStatus.TODO

        release.set()
        await tick
        assert await hook is delegated_task
        assert delegated_task.status == TaskStatus.REVIEW
