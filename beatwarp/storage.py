from __future__ import annotations

import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol, Union

from .config import settings


class ObjectStorage(Protocol):
    def download(self, key: str) -> bytes: ...

    def upload(self, key: str, data: bytes) -> None: ...

    def delete(self, key: str) -> bool: ...

    def exists(self, key: str) -> bool: ...

    # local path of a stored object, for ranged reads that must not copy it
    def abs_path(self, key: str) -> Path: ...

    def make_key(self, kind: str, suffix: str = ".wav", stem: Optional[str] = None) -> str: ...


class LocalStorage:
    """
    Local filesystem object storage.

    Guarantees:
    - Keys are relative paths under ``storage_dir`` (no traversal outside it)
    - Writes are atomic (tmp file + replace): readers never see a partial object
    """

    def __init__(self, storage_dir: Union[str, Path, None] = None):
        self.storage_dir = Path(storage_dir or settings.STORAGE_DIR).resolve()
        self.storage_dir.mkdir(parents=True, exist_ok=True)

    # ---------- public API ----------

    def download(self, key: str) -> bytes:
        path = self.abs_path(key)
        if not path.is_file():
            raise FileNotFoundError(f"No object stored under key {key!r}")
        return path.read_bytes()

    def upload(self, key: str, data: bytes) -> None:
        path = self.abs_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            tmp_path.write_bytes(data)
            os.replace(tmp_path, path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    def delete(self, key: str) -> bool:
        """Remove an object; False if nothing was stored under ``key``."""
        path = self.abs_path(key)
        if not path.is_file():
            return False
        path.unlink()
        return True

    def exists(self, key: str) -> bool:
        return self.abs_path(key).is_file()

    def abs_path(self, key: str) -> Path:
        key_norm = key.replace("\\", "/").lstrip("/")
        path = (self.storage_dir / key_norm).resolve()
        if path != self.storage_dir and self.storage_dir not in path.parents:
            raise ValueError(f"Storage key escapes the storage root: {key!r}")
        return path

    def make_key(self, kind: str, suffix: str = ".wav", stem: Optional[str] = None) -> str:
        # shard by date to avoid huge directories
        date_prefix = datetime.now(timezone.utc).strftime("%Y/%m/%d")
        safe_suffix = suffix if suffix.startswith(".") else f".{suffix}"
        return f"{kind}/{date_prefix}/{stem or uuid.uuid4().hex}{safe_suffix}"
