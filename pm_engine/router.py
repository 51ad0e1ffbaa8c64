"""
Read-only HTTP API over the project repository.

Routes:
- GET /pm/projects                  list, filter by status / owner_id
- GET /pm/projects/{project_id}     full project with milestones and tasks
- GET /pm/projects/{project_id}/report  structured status report
- GET /pm/summary                   aggregate counts per project
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from .errors import PMError, ProjectNotFoundError
from .project_repository import ProjectRepository

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
logger = logging.getLogger("pm_router")

# -----------------------------------------------------------------------------
# Router Setup
# -----------------------------------------------------------------------------
router = APIRouter(prefix="/pm", tags=["Projects"])


def get_repository(request: Request) -> ProjectRepository:
    """Repository wired onto the app at startup."""
    return request.app.state.repository


# -----------------------------------------------------------------------------
# Response Models
# -----------------------------------------------------------------------------
class ProjectListResponse(BaseModel):
    projects: List[Dict[str, Any]]
    count: int


class ProjectSummary(BaseModel):
    project_id: str
    name: str
    status: str
    owner_id: str
    owner: str
    progress: int
    milestone_count: int
    task_count: int
    tasks_done: int
    tasks_blocked: int
    tasks_in_progress: int
    tasks_cancelled: int
    updated_at: str


class SummaryResponse(BaseModel):
    projects: List[ProjectSummary]
    count: int


def _http_error(status_code: int, error: PMError) -> HTTPException:
    return HTTPException(status_code=status_code, detail=error.to_dict())


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------
@router.get("/projects", response_model=ProjectListResponse)
async def list_projects(
    status: Optional[str] = Query(None, description="planning, active, on_hold, completed, cancelled"),
    owner_id: Optional[str] = Query(None),
    repository: ProjectRepository = Depends(get_repository),
):
    try:
        projects = repository.get_projects(status=status, owner_id=owner_id)
    except PMError as e:
        logger.warning(f"Rejected project list filter: {e.message}")
        raise _http_error(400, e)
    return ProjectListResponse(projects=[p.to_dict() for p in projects], count=len(projects))


@router.get("/summary", response_model=SummaryResponse)
async def projects_summary(repository: ProjectRepository = Depends(get_repository)):
    summary = repository.get_projects_summary()
    return SummaryResponse(projects=[ProjectSummary(**s) for s in summary], count=len(summary))


@router.get("/projects/{project_id}")
async def get_project(project_id: str, repository: ProjectRepository = Depends(get_repository)):
    project = repository.get_project(project_id)
    if project is None:
        raise _http_error(404, ProjectNotFoundError(project_id))
    return project.to_dict()


@router.get("/projects/{project_id}/report")
async def project_report(
    project_id: str,
    today: Optional[str] = Query(None, description="YYYY-MM-DD, defaults to the current UTC date"),
    repository: ProjectRepository = Depends(get_repository),
):
    report = repository.status_report(project_id, today=today)
    if report is None:
        raise _http_error(404, ProjectNotFoundError(project_id))
    return report
