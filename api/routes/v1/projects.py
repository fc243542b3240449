"""
api/routes/v1/projects.py -- Permission-tagged project directory.

Routes:
  GET    /api/v1/projects        -- projects visible to the caller
  GET    /api/v1/projects/{id}   -- one project, 403 if not visible
  POST   /api/v1/projects        -- create (editor or admin)
  PUT    /api/v1/projects/{id}   -- replace (editor or admin)
  DELETE /api/v1/projects/{id}   -- delete (editor or admin)

Reads accept anonymous callers, who hold no tags and therefore only see
projects with an empty required-tag set.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request

from api.models import MessageResponse, ProjectCreate, ProjectResponse
from auth.dependencies import get_current_user, try_get_current_user
from auth.models import User
from auth.projects import ProjectManager

router = APIRouter()


def _tags(user: Optional[User]) -> frozenset[str]:
    return user.permissions if user is not None else frozenset()


@router.get("/projects", response_model=list[ProjectResponse])
def list_projects(
    request: Request,
    user: Optional[User] = Depends(try_get_current_user),
) -> list[ProjectResponse]:
    projects: ProjectManager = request.app.state.projects
    return [ProjectResponse.from_project(p) for p in projects.list_visible(_tags(user))]


@router.get("/projects/{project_id}", response_model=ProjectResponse)
def get_project(
    request: Request,
    project_id: int,
    user: Optional[User] = Depends(try_get_current_user),
) -> ProjectResponse:
    projects: ProjectManager = request.app.state.projects
    return ProjectResponse.from_project(projects.get_visible(project_id, _tags(user)))


@router.post("/projects", response_model=ProjectResponse, status_code=201)
def create_project(
    request: Request,
    body: ProjectCreate,
    current_user: User = Depends(get_current_user),
) -> ProjectResponse:
    projects: ProjectManager = request.app.state.projects
    project = projects.create(
        current_user,
        body.name,
        description=body.description,
        link=body.link,
        permissions=body.permissions,
    )
    return ProjectResponse.from_project(project)


@router.put("/projects/{project_id}", response_model=ProjectResponse)
def update_project(
    request: Request,
    project_id: int,
    body: ProjectCreate,
    current_user: User = Depends(get_current_user),
) -> ProjectResponse:
    projects: ProjectManager = request.app.state.projects
    project = projects.update(
        current_user,
        project_id,
        body.name,
        description=body.description,
        link=body.link,
        permissions=body.permissions,
    )
    return ProjectResponse.from_project(project)


@router.delete("/projects/{project_id}", response_model=MessageResponse)
def delete_project(
    request: Request,
    project_id: int,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    projects: ProjectManager = request.app.state.projects
    projects.delete(current_user, project_id)
    return MessageResponse(message="Project deleted successfully")
