from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from errors import LedgerError

log = logging.getLogger("snapshot")


class LedgerRepository(Protocol):
    """Whole-document persistence for the position ledger."""

    def load(self) -> Optional[Dict[str, Any]]:
        ...

    def save(self, doc: Dict[str, Any]) -> None:
        ...


class JsonFileRepository:
    """
    One JSON document per instance. Writes go to a temp file in the same
    directory and are moved into place with os.replace, so a crash leaves
    either the old or the new document, never a torn one.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            with self.path.open("r", encoding="utf-8") as f:
                doc = json.load(f)
        except (OSError, ValueError) as e:
            raise LedgerError(f"cannot read state file: {e}", details={"path": str(self.path)}) from e
        if not isinstance(doc, dict):
            raise LedgerError("state file is not a JSON object", details={"path": str(self.path)})
        return doc

    def save(self, doc: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=self.path.name, suffix=".tmp")
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                json.dump(doc, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise LedgerError(f"cannot write state file: {e}", details={"path": str(self.path)}) from e


class MemoryRepository:
    """In-process repository; keeps a JSON round-tripped copy like the file store would."""

    def __init__(self, doc: Optional[Dict[str, Any]] = None):
        self.doc = json.loads(json.dumps(doc)) if doc is not None else None
        self.saves = 0

    def load(self) -> Optional[Dict[str, Any]]:
        return json.loads(json.dumps(self.doc)) if self.doc is not None else None

    def save(self, doc: Dict[str, Any]) -> None:
        self.doc = json.loads(json.dumps(doc))
        self.saves += 1
