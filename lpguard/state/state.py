"""
JSON state file persistence.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict

from lpguard.core.errors import StoreCorruptError, StoreError
from lpguard.core.json_utils import dumps_pretty, loads


class JsonFileStore:
    """
    One JSON object per file. ``save`` returns only after the bytes are on
    disk: write to ``.tmp``, fsync, then atomically replace the target.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            raw = self.path.read_bytes()
        except OSError as exc:
            raise StoreError(f"cannot read {self.path}: {exc}") from exc
        if not raw.strip():
            return {}
        try:
            data = loads(raw)
        except ValueError as exc:
            raise StoreCorruptError(f"corrupt state file {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StoreCorruptError(f"corrupt state file {self.path}: top level is {type(data).__name__}")
        return data

    def save(self, data: Dict[str, Any]) -> None:
        try:
            with open(self.tmp, "wb") as fh:
                fh.write(dumps_pretty(data))
                fh.flush()
                os.fsync(fh.fileno())
            self.tmp.replace(self.path)
        except OSError as exc:
            raise StoreError(f"cannot write {self.path}: {exc}") from exc
