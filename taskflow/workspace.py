"""Host capabilities over a local workspace directory.

Sources, the orchestrator and the write API only talk to the workspace
through this object: read, write, stat, listing, frontmatter and tag lookup.
Any object exposing the same coroutine methods can stand in for it.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from taskflow.date_utils import file_timestamps
from taskflow.parsers.frontmatter import parse_frontmatter

logger = logging.getLogger("taskflow.workspace")

MARKDOWN_SUFFIXES = (".md",)


def is_hidden(rel_path: str) -> bool:
    return any(part.startswith(".") for part in rel_path.split("/") if part)


class LocalWorkspace:
    """Filesystem-backed workspace rooted at ``root``; paths are root-relative POSIX strings."""

    def __init__(self, root: Path):
        self.root = Path(root).resolve()

    def resolve(self, rel_path: str) -> Path:
        candidate = (self.root / rel_path).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise ValueError(f"Path escapes workspace: {rel_path}")
        return candidate

    def relative(self, path: str | Path) -> str | None:
        """Root-relative form of an absolute path, or None if outside the root."""
        p = Path(path)
        if not p.is_absolute():
            return p.as_posix()
        try:
            return p.resolve().relative_to(self.root).as_posix()
        except ValueError:
            return None

    async def exists(self, rel_path: str) -> bool:
        try:
            return self.resolve(rel_path).is_file()
        except ValueError:
            return False

    async def read(self, rel_path: str) -> str:
        return self.resolve(rel_path).read_text(encoding="utf-8")

    async def write(self, rel_path: str, content: str) -> None:
        path = self.resolve(rel_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")

    async def stat(self, rel_path: str) -> dict[str, int] | None:
        try:
            path = self.resolve(rel_path)
        except ValueError:
            return None
        if not path.exists():
            return None
        return file_timestamps(path)

    async def list_files(self, suffixes: Iterable[str] = MARKDOWN_SUFFIXES) -> list[str]:
        wanted = tuple(suffixes)
        results = []
        if not self.root.exists():
            return results
        for path in self.root.rglob("*"):
            if not path.is_file() or path.suffix not in wanted:
                continue
            rel = path.relative_to(self.root).as_posix()
            if is_hidden(rel):
                continue
            results.append(rel)
        return sorted(results)

    async def list_markdown_files(self) -> list[str]:
        return await self.list_files(MARKDOWN_SUFFIXES)

    async def get_frontmatter(self, rel_path: str) -> dict:
        try:
            return parse_frontmatter(await self.read(rel_path), rel_path)
        except (OSError, ValueError) as e:
            logger.warning(f"Cannot read frontmatter of {rel_path}: {e}")
            return {}
