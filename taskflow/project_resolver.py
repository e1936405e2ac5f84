"""Resolve which project a file belongs to and the project-level metadata."""
from __future__ import annotations

import logging
import posixpath
import re
from typing import Any, Optional

from pydantic import BaseModel, Field

from taskflow.models import TgProject
from taskflow.settings import ProjectSettings

logger = logging.getLogger("taskflow.projects")


class ProjectData(BaseModel):
    tgProject: Optional[TgProject] = None
    enhancedMetadata: dict[str, Any] = Field(default_factory=dict)
    configSource: Optional[str] = None

    def as_project_meta(self) -> dict[str, Any]:
        """Shape handed to the augmentor as project-level metadata."""
        meta = dict(self.enhancedMetadata)
        if self.tgProject is not None:
            meta["tgProject"] = self.tgProject
        if self.configSource:
            meta["configSource"] = self.configSource
        return meta


def matches_path_pattern(file_path: str, pattern: str) -> bool:
    path = file_path.replace("\\", "/")
    normalized = pattern.replace("\\", "/")
    if "*" in normalized or "?" in normalized:
        regex = re.escape(normalized).replace(r"\*", ".*").replace(r"\?", ".")
        return re.fullmatch(regex, path, re.IGNORECASE) is not None
    return normalized in path


class ProjectResolver:
    def __init__(self, workspace, settings: ProjectSettings | None = None):
        self.workspace = workspace
        self.settings = settings or ProjectSettings()
        self._cache: dict[str, ProjectData] = {}
        self._config_cache: dict[str, Optional[tuple[str, dict]]] = {}

    def update_settings(self, settings: ProjectSettings) -> None:
        self.settings = settings
        self.clear_cache()

    def clear_cache(self, file_path: str | None = None) -> None:
        if file_path is None:
            self._cache.clear()
            self._config_cache.clear()
            return
        self._cache.pop(file_path, None)
        if self.is_config_file(file_path):
            # A config edit can change every file below its directory
            self._cache.clear()
            self._config_cache.clear()

    def is_config_file(self, file_path: str) -> bool:
        return posixpath.basename(file_path) == self.settings.configFileName

    async def resolve(self, file_path: str, file_meta: dict | None = None) -> ProjectData:
        cached = self._cache.get(file_path)
        if cached is not None and file_meta is None:
            return cached

        if file_meta is None:
            file_meta = await self.workspace.get_frontmatter(file_path)
        config = await self._find_config(file_path)
        config_path, config_meta = config if config else (None, {})

        data = ProjectData(
            tgProject=self._determine_project(file_path, file_meta, config_path, config_meta),
            enhancedMetadata={k: v for k, v in config_meta.items() if k != "project"},
            configSource=config_path,
        )
        self._cache[file_path] = data
        return data

    def _determine_project(
        self,
        file_path: str,
        file_meta: dict,
        config_path: str | None,
        config_meta: dict,
    ) -> Optional[TgProject]:
        key = self.settings.metadataKey
        value = file_meta.get(key)
        if isinstance(value, str) and value.strip():
            return TgProject(type="metadata", name=value.strip(), source=key, readonly=True)

        for mapping in self.settings.pathMappings:
            if mapping.enabled and matches_path_pattern(file_path, mapping.pathPattern):
                return TgProject(type="path", name=mapping.projectName, source=mapping.pathPattern, readonly=True)

        if config_path is not None:
            name = config_meta.get("project")
            if not (isinstance(name, str) and name.strip()):
                name = posixpath.basename(posixpath.dirname(config_path)) or None
            if name:
                return TgProject(type="config", name=str(name).strip(), source=config_path, readonly=True)

        if self.settings.useFileNameAsDefault:
            stem = posixpath.splitext(posixpath.basename(file_path))[0]
            if stem:
                return TgProject(type="default", name=stem, source="filename", readonly=True)
        return None

    async def _find_config(self, file_path: str) -> Optional[tuple[str, dict]]:
        directory = posixpath.dirname(file_path)
        visited: list[str] = []
        found: Optional[tuple[str, dict]] = None
        while True:
            if directory in self._config_cache:
                found = self._config_cache[directory]
                break
            visited.append(directory)
            candidate = posixpath.join(directory, self.settings.configFileName) if directory else self.settings.configFileName
            if await self.workspace.exists(candidate):
                found = (candidate, await self.workspace.get_frontmatter(candidate))
                break
            if not directory:
                break
            directory = posixpath.dirname(directory)
        for d in visited:
            self._config_cache[d] = found
        return found
