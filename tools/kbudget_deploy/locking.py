"""Per-environment lease file preventing two deploy runs from interleaving."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Optional

from kbudget_deploy.errors import RunLockHeld
from kbudget_deploy.models import utc_now


class RunLock:
  def __init__(self, lock_dir: Path, environment: str) -> None:
    self._path = lock_dir / f".deploy_{environment}.lock"
    self._fd: Optional[int] = None

  @property
  def path(self) -> Path:
    return self._path

  def acquire(self) -> None:
    self._path.parent.mkdir(parents=True, exist_ok=True)
    try:
      fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    except FileExistsError as exc:
      holder = self._path.read_text(encoding="utf-8", errors="replace").strip() or "unknown holder"
      raise RunLockHeld(
        f"Another deployment run holds {self._path} ({holder}).",
        remediation=f"Wait for the other run to finish, or remove {self._path} if it is stale.",
      ) from exc
    os.write(fd, json.dumps({"pid": os.getpid(), "startedAt": utc_now().isoformat()}).encode("utf-8"))
    self._fd = fd

  def release(self) -> None:
    if self._fd is None:
      return
    os.close(self._fd)
    self._fd = None
    try:
      self._path.unlink()
    except FileNotFoundError:
      pass

  def __enter__(self) -> "RunLock":
    self.acquire()
    return self

  def __exit__(self, *exc_info) -> None:
    self.release()
