from __future__ import annotations

import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Optional

from .config import settings
from .logger import get_logger

logger = get_logger(__name__)


class Workspace:
    """
    Private temp directory for one engine invocation.

    Use as a context manager; the directory and everything in it is removed on
    exit, whether the invocation succeeded or raised.
    """

    def __init__(self, prefix: str = "warp", root: Optional[str] = None):
        self.prefix = prefix
        self.root = root if root is not None else settings.WORKSPACE_DIR
        self.path: Optional[Path] = None

    def __enter__(self) -> "Workspace":
        if self.root:
            Path(self.root).mkdir(parents=True, exist_ok=True)
        self.path = Path(tempfile.mkdtemp(prefix=f"beatwarp-{self.prefix}-", dir=self.root))
        logger.debug("Workspace created: %s", self.path)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self.path is None:
            return
        shutil.rmtree(self.path, ignore_errors=True)
        logger.debug("Workspace removed: %s", self.path)
        self.path = None

    def file(self, stem: str, suffix: str = ".wav") -> Path:
        """Unique path inside the workspace (the file is not created)."""
        if self.path is None:
            raise RuntimeError("Workspace is not open")
        return self.path / f"{stem}_{uuid.uuid4().hex}{suffix}"
