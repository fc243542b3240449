"""
auth/projects.py -- Project CRUD and visibility.

Reads go through the ProjectCache (the whole table, loaded once); every
write invalidates it. Writes require the "editor" or "admin" tag.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from auth.accounts import validate_tags
from auth.models import Project, User
from auth.permissions import allowed, can_edit_projects, visible_projects
from core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError

if TYPE_CHECKING:
    from auth.store import CredentialStore
    from cache.store import ProjectCache

logger = logging.getLogger("keyhold.auth.projects")


class ProjectManager:
    def __init__(self, store: CredentialStore, cache: ProjectCache) -> None:
        self.store = store
        self.cache = cache

    def list_visible(self, user_tags: Iterable[str]) -> list[Project]:
        return visible_projects(self.cache.all(), user_tags)

    def get_visible(self, project_id: int, user_tags: Iterable[str]) -> Project:
        project = self.store.get_project(project_id)
        if project is None:
            raise NotFoundError("Project not found")
        if not allowed(user_tags, project.permissions):
            raise AuthorizationError("Permission denied")
        return project

    def create(
        self,
        editor: User,
        name: str | None,
        description: str | None = None,
        link: str | None = None,
        permissions=None,
    ) -> Project:
        self._require_editor(editor)
        name = _clean_name(name)
        tags = validate_tags(permissions if permissions is not None else [])
        if self.store.get_project_by_name(name) is not None:
            raise ConflictError("Project with this name already exists", field="name")
        project = Project(name=name, description=description or "", link=link or "/", permissions=frozenset(tags))
        try:
            project.id = self.store.create_project(project)
        except IntegrityError as exc:
            raise ConflictError("Project with this name already exists", field="name") from exc
        self.cache.invalidate()
        logger.info("Project %r created by user_id=%s", name, editor.id)
        return self.store.get_project(project.id) or project

    def update(
        self,
        editor: User,
        project_id: int,
        name: str | None,
        description: str | None = None,
        link: str | None = None,
        permissions=None,
    ) -> Project:
        self._require_editor(editor)
        name = _clean_name(name)
        tags = validate_tags(permissions if permissions is not None else [])
        if self.store.get_project(project_id) is None:
            raise NotFoundError("Project not found")
        duplicate = self.store.get_project_by_name(name)
        if duplicate is not None and duplicate.id != project_id:
            raise ConflictError("Another project with this name already exists", field="name")
        try:
            self.store.update_project(
                project_id,
                name=name,
                description=description or "",
                link=link or "/",
                permissions=tags,
            )
        except IntegrityError as exc:
            raise ConflictError("Another project with this name already exists", field="name") from exc
        self.cache.invalidate()
        logger.info("Project id=%s updated by user_id=%s", project_id, editor.id)
        return self.store.get_project(project_id)

    def delete(self, editor: User, project_id: int) -> None:
        self._require_editor(editor)
        if not self.store.delete_project(project_id):
            raise NotFoundError("Project not found")
        self.cache.invalidate()
        logger.info("Project id=%s deleted by user_id=%s", project_id, editor.id)

    @staticmethod
    def _require_editor(user: User) -> None:
        if not can_edit_projects(user.permissions):
            raise AuthorizationError("Editor or admin permissions required")


def _clean_name(name) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Project name is required", field="name")
    return name.strip()
