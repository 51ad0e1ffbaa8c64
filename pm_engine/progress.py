"""
Progress Calculator

Pure, mechanical progress computation. No I/O and no persistence; callers
persist the mutated entities.

Rules:
- Tasks in status CANCELLED are excluded from every ratio
- progress = round(done / active * 100), 0 when nothing is active
- A CANCELLED milestone is frozen and never recomputed
- Only an ACTIVE project auto-advances to COMPLETED, and only at 100
"""

import logging
from typing import Iterable, List

from .models import (
    Milestone,
    MilestoneStatus,
    Project,
    ProjectStatus,
    ProjectTask,
    TaskStatus,
)

logger = logging.getLogger("pm_progress")

# Task statuses that still count as "not started" for milestone status
_NOT_STARTED = {TaskStatus.TODO, TaskStatus.PAUSED}


def _round_half_up(value: float) -> int:
    # round() uses banker's rounding; progress follows Math.round semantics
    return int(value + 0.5)


def compute_progress(tasks: Iterable[ProjectTask]) -> int:
    """Percentage of non-cancelled tasks that are done."""
    active = [t for t in tasks if t.status != TaskStatus.CANCELLED]
    if not active:
        return 0
    done = sum(1 for t in active if t.status == TaskStatus.DONE)
    return _round_half_up(done / len(active) * 100)


def recalc_milestone(milestone: Milestone, tasks: List[ProjectTask]) -> Milestone:
    """Recompute progress and status of one milestone from the project's tasks."""
    if milestone.status == MilestoneStatus.CANCELLED:
        return milestone

    active = [
        t for t in tasks
        if t.milestone_id == milestone.milestone_id and t.status != TaskStatus.CANCELLED
    ]
    if not active:
        milestone.progress = 0
        milestone.status = MilestoneStatus.PENDING
        return milestone

    milestone.progress = compute_progress(active)
    if milestone.progress == 100:
        milestone.status = MilestoneStatus.COMPLETED
    elif any(t.status not in _NOT_STARTED for t in active):
        milestone.status = MilestoneStatus.IN_PROGRESS
    else:
        milestone.status = MilestoneStatus.PENDING
    return milestone


def recalc_project(project: Project) -> int:
    """
    Recompute project progress and apply the ACTIVE -> COMPLETED transition.

    Returns the new progress value.
    """
    project.progress = compute_progress(project.tasks)

    if project.status == ProjectStatus.ACTIVE and project.progress == 100:
        project.status = ProjectStatus.COMPLETED
        logger.info(f"Project {project.project_id} reached 100% and is now completed")

    return project.progress


def recalculate(project: Project) -> int:
    """Recompute every milestone, then the project. Returns project progress."""
    for milestone in project.milestones:
        recalc_milestone(milestone, project.tasks)
    return recalc_project(project)
