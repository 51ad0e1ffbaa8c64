"""
Structured errors for the project engine.

Every error carries a stable code, a human-readable message and a details
dict so callers (HTTP router, tooling) can render it without parsing text.
"""

from typing import Any, Dict, List


class PMError(Exception):
    """Base error with structured details."""
    def __init__(self, code: str, message: str, details: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ProjectNotFoundError(PMError):
    def __init__(self, project_id: str):
        super().__init__(
            code="PROJECT_NOT_FOUND",
            message=f"Project '{project_id}' not found",
            details={"project_id": project_id}
        )


class TaskNotFoundError(PMError):
    def __init__(self, project_id: str, task_id: str):
        super().__init__(
            code="TASK_NOT_FOUND",
            message=f"Task '{task_id}' not found in project '{project_id}'",
            details={"project_id": project_id, "task_id": task_id}
        )


class ValidationError(PMError):
    def __init__(self, errors: List[str]):
        super().__init__(
            code="VALIDATION_FAILED",
            message="Validation failed: " + "; ".join(errors),
            details={"errors": errors}
        )


class DeleteRejectedError(PMError):
    def __init__(self, project_id: str, unfinished: int):
        super().__init__(
            code="DELETE_REJECTED",
            message=(
                f"Project '{project_id}' is active with {unfinished} unfinished tasks; "
                f"cancel or complete it first, or force the delete"
            ),
            details={"project_id": project_id, "unfinished_tasks": unfinished}
        )


class PersistenceError(PMError):
    def __init__(self, code: str, message: str, error: str = ""):
        super().__init__(code=code, message=message, details={"error": error})
