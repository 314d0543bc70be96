"""Temporary files handed to backend processes (system prompts, images)."""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from headless_agents.runtime.models import ImageAttachment

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_FILENAME = "system-prompt.md"


@dataclass(slots=True)
class StagedFiles:
    """Paths written for one run plus the function that removes them."""

    paths: tuple[Path, ...]
    release: Callable[[], None] = field(repr=False)

    @property
    def path(self) -> Path:
        return self.paths[0]


class ResourceStager(Protocol):
    """Protocol implemented by staging collaborators."""

    def stage_system_prompt(self, text: str) -> StagedFiles:
        """Write the system prompt to a file readable by the backend."""

    def stage_images(self, images: Sequence[ImageAttachment]) -> StagedFiles:
        """Write each image payload to its own file."""


class TempDirStager:
    """Stage files in a private temporary directory per call."""

    def __init__(self, root: Path | None = None) -> None:
        self._root = root

    def stage_system_prompt(self, text: str) -> StagedFiles:
        directory = self._make_dir("prompt")
        path = directory / SYSTEM_PROMPT_FILENAME
        path.write_text(text, "utf-8")
        return StagedFiles(paths=(path,), release=_remover(directory))

    def stage_images(self, images: Sequence[ImageAttachment]) -> StagedFiles:
        directory = self._make_dir("images")
        paths: list[Path] = []
        for index, image in enumerate(images, start=1):
            path = directory / f"image-{index}{image.suffix}"
            path.write_bytes(image.data)
            paths.append(path)
        return StagedFiles(paths=tuple(paths), release=_remover(directory))

    def _make_dir(self, kind: str) -> Path:
        if self._root is not None:
            self._root.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=f"headless-agents-{kind}-", dir=self._root))


def _remover(directory: Path) -> Callable[[], None]:
    def release() -> None:
        shutil.rmtree(directory, ignore_errors=True)
        logger.debug("Released staged directory %s", directory)

    return release
