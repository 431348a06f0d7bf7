"""
Explicit capability checks for the optional native pieces of the backend.

Nothing here swallows a failure silently: every check returns a typed
``Capability`` saying whether the piece is usable and, if not, why. Callers
decide whether that is fatal (stretching) or degradable (transient analysis).
"""

from __future__ import annotations

import importlib
import os
import shutil
from dataclasses import asdict, dataclass
from functools import lru_cache
from typing import Optional

from .errors import BackendUnavailable
from .logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Capability:
    name: str
    available: bool
    reason: Optional[str] = None
    location: Optional[str] = None

    def require(self) -> "Capability":
        if not self.available:
            raise BackendUnavailable(
                f"Backend '{self.name}' is not available: {self.reason}",
                {"backend": self.name, "reason": self.reason},
            )
        return self

    def to_dict(self) -> dict:
        return asdict(self)


@lru_cache(maxsize=None)
def _import(module: str):
    # librosa pulls in numba/llvmlite, which can fail to import on some hosts
    try:
        return importlib.import_module(module), None
    except Exception as e:  # noqa: BLE001 - reported, not swallowed
        logger.warning("Module %s could not be imported: %s", module, e)
        return None, f"{type(e).__name__}: {e}"


def module_capability(name: str, module: str) -> Capability:
    mod, reason = _import(module)
    if mod is None:
        return Capability(name, False, reason)
    return Capability(name, True, location=getattr(mod, "__version__", None))


def librosa_capability() -> Capability:
    return module_capability("librosa", "librosa")


def require_librosa():
    librosa_capability().require()
    return _import("librosa")[0]


def executable_capability(name: str, configured: Optional[str] = None) -> Capability:
    """Locate an executable from an explicit path or from PATH."""
    if configured:
        if os.path.isfile(configured) and os.access(configured, os.X_OK):
            return Capability(name, True, location=configured)
        return Capability(name, False, f"configured executable not found: {configured}")
    found = shutil.which(name)
    if found:
        return Capability(name, True, location=found)
    return Capability(name, False, f"'{name}' not found on PATH")
