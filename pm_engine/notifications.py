"""
Project Notification Templates

Builds the structured standup report and the owner-facing messages the
reconciliation loop delivers through the MessagingPort.

IMPORTANT:
- Templates are pure: they read entities, never mutate them
- The standup report carries both a structured payload and rendered text
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List

from .models import MilestoneStatus, Milestone, Project, ProjectTask, TaskStatus

SYSTEM_AUTHOR_ID = "pm-engine"
SYSTEM_AUTHOR_NAME = "PM System"

DEPENDENCIES_READY_NOTE = "All dependencies are done; this task can start now"


@dataclass
class ProjectIssues:
    """Overdue / blocked conditions detected for one project in one tick."""
    overdue_tasks: List[ProjectTask] = field(default_factory=list)
    blocked_tasks: List[ProjectTask] = field(default_factory=list)
    overdue_milestones: List[Milestone] = field(default_factory=list)

    @property
    def has_issues(self) -> bool:
        return bool(self.overdue_tasks or self.blocked_tasks or self.overdue_milestones)


@dataclass
class StandupReport:
    """Structured standup delivered to the project owner."""
    project_id: str
    project_name: str
    progress: int
    task_counts: Dict[str, int]
    milestones: List[Dict[str, Any]]
    overdue: List[Dict[str, Any]]
    blocked: List[Dict[str, Any]]
    unassigned: List[Dict[str, Any]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "project_name": self.project_name,
            "progress": self.progress,
            "task_counts": self.task_counts,
            "milestones": self.milestones,
            "overdue": self.overdue,
            "blocked": self.blocked,
            "unassigned": self.unassigned,
        }

    def render(self) -> str:
        counts = self.task_counts
        lines = [
            f"*Standup - {self.project_name}*",
            "",
            f"📊 Progress: {self.progress}%",
            (
                f"📋 Tasks: {counts['total']} total | ✅ done {counts['done']} | "
                f"⏳ in progress {counts['in_progress']} | 📝 review {counts['review']} | "
                f"📌 todo {counts['todo']} | 🚫 blocked {counts['blocked']} | "
                f"⏸ paused {counts['paused']}"
            ),
            "",
        ]

        if self.milestones:
            lines.append("📌 Milestones:")
            for ms in self.milestones:
                icon = {"completed": "✅", "in_progress": "🔄", "cancelled": "✖"}.get(ms["status"], "⏳")
                due = f" (due {ms['due_date']})" if ms["due_date"] else ""
                lines.append(f"  {icon} {ms['name']}: {ms['progress']}%{due}")
            lines.append("")

        if self.overdue:
            lines.append("⚠️ Overdue tasks:")
            for t in self.overdue:
                lines.append(f"  - [{t['priority']}] {t['title']} ({t['assignee'] or 'unassigned'}, due {t['due_date']})")
            lines.append("")

        if self.blocked:
            lines.append("🚫 Blocked tasks:")
            for t in self.blocked:
                lines.append(f"  - {t['title']}: {t['reason'] or 'unknown reason'}")
            lines.append("")

        if self.unassigned:
            lines.append("📋 Unassigned tasks:")
            for t in self.unassigned:
                lines.append(f"  - [{t['priority']}] {t['title']}")
            lines.append("")

        lines.append("Please handle overdue and blocked work and assign the open tasks.")
        return "\n".join(lines)


def build_standup_report(project: Project, issues: ProjectIssues) -> StandupReport:
    tasks = project.tasks
    task_counts = {status.value: 0 for status in TaskStatus}
    for task in tasks:
        task_counts[task.status.value] += 1
    task_counts["total"] = len(tasks)

    return StandupReport(
        project_id=project.project_id,
        project_name=project.name,
        progress=project.progress,
        task_counts=task_counts,
        milestones=[
            {
                "milestone_id": ms.milestone_id,
                "name": ms.name,
                "status": ms.status.value,
                "progress": ms.progress,
                "due_date": ms.due_date,
            }
            for ms in project.milestones
        ],
        overdue=[
            {
                "task_id": t.task_id,
                "title": t.title,
                "priority": t.priority.value,
                "assignee": t.assignee_name or t.assignee_id,
                "due_date": t.due_date,
            }
            for t in issues.overdue_tasks
        ],
        blocked=[
            {"task_id": t.task_id, "title": t.title, "reason": t.blocker_note}
            for t in issues.blocked_tasks
        ],
        unassigned=[
            {"task_id": t.task_id, "title": t.title, "priority": t.priority.value}
            for t in tasks
            if not t.assignee_id and t.status == TaskStatus.TODO
        ],
    )


def progress_change_message(
    project: Project,
    prev_progress: int,
    new_progress: int,
    completed_milestones: List[Milestone],
) -> str:
    if new_progress >= 100 > prev_progress:
        return f"🎉 Project '{project.name}' is complete. Every task is done."

    direction = "📈" if new_progress >= prev_progress else "📉"
    message = f"{direction} Project '{project.name}' progress: {prev_progress}% → {new_progress}%"
    if completed_milestones:
        names = ", ".join(m.name for m in completed_milestones)
        message += f"\n🏁 Milestone completed: {names}"
    return message


def delegated_failure_note(result) -> str:
    return f"Delegated task failed: {result or 'unknown reason'}"


def delegation_description(project: Project, task: ProjectTask) -> str:
    body = f"[Project: {project.name}]\nTask: {task.title}\n"
    if task.description:
        body += f"{task.description}\n"
    return body + "\nPlease carry out this task and report back."


def completed_milestone_ids(project: Project) -> List[str]:
    return [m.milestone_id for m in project.milestones if m.status == MilestoneStatus.COMPLETED]
