from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from errors import ConfigurationError

log = logging.getLogger("lock")


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by someone else
        return True
    return True


class InstanceLock:
    """
    One running bot per state file. The lock file holds the owner's PID;
    a lock whose PID is gone is taken over.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._held = False

    def _read_pid(self) -> Optional[int]:
        try:
            return int(self.path.read_text(encoding="utf-8").strip() or "0")
        except (OSError, ValueError):
            return None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                pid = self._read_pid()
                if pid is not None and pid != os.getpid() and _pid_alive(pid):
                    raise ConfigurationError("another instance is running", details={"pid": pid, "lock": str(self.path)})
                log.warning("Removing stale lock %s (pid=%s)", self.path, pid)
                try:
                    self.path.unlink()
                except FileNotFoundError:
                    pass
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(str(os.getpid()))
            self._held = True
            return
        raise ConfigurationError("could not acquire instance lock", details={"lock": str(self.path)})

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        if self._read_pid() == os.getpid():
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass

    @property
    def held(self) -> bool:
        return self._held

    def __enter__(self) -> "InstanceLock":
        self.acquire()
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()
