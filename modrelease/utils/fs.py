from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write bytes atomically so a failed run never leaves a half-written manifest or archive."""
    ensure_dir(path.parent)
    fd, tmp = tempfile.mkstemp(prefix=path.name, dir=str(path.parent))
    tmp_path = Path(tmp)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        tmp_path.replace(path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def atomic_write_text(path: Path, text: str, encoding: str = "utf-8") -> None:
    atomic_write_bytes(path, text.encode(encoding))


def replace_dir(staged: Path, dst: Path) -> None:
    """Swap a fully staged directory into place, removing the previous contents."""
    backup = dst.with_name(dst.name + ".old")
    if backup.exists():
        shutil.rmtree(backup)
    if dst.exists():
        dst.rename(backup)
    staged.rename(dst)
    if backup.exists():
        shutil.rmtree(backup)
