from __future__ import annotations

import os
import stat
import tempfile
from pathlib import Path


def _sync_parent(path: Path) -> None:
    """Flush the directory entry of ``path``; platforms without directory fds are skipped."""
    if not hasattr(os, "O_DIRECTORY"):
        return
    try:
        fd = os.open(path.parent, os.O_RDONLY | os.O_DIRECTORY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def atomic_write_text(path: Path, data: str) -> None:
    """Replace ``path`` with ``data`` so readers never observe a partial file.

    Each writer gets its own temporary file, so the web process and the update
    runner can both rewrite the same state file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    handle = tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
    )
    staged = Path(handle.name)
    try:
        with handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(staged, path)
    except BaseException:
        staged.unlink(missing_ok=True)
        raise
    _sync_parent(path)


def exclusive_write_text(path: Path, data: str, *, mode: int = stat.S_IRUSR | stat.S_IWUSR) -> None:
    """Create ``path`` and write ``data``; raises FileExistsError if it is already there."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(data)
        handle.flush()
        os.fsync(handle.fileno())
    _sync_parent(path)


def probe_writable(directory: Path) -> bool:
    test_file = directory / ".write-test"
    try:
        test_file.write_text("test", encoding="utf-8")
        test_file.unlink()
    except OSError:
        return False
    return True


__all__ = ["atomic_write_text", "exclusive_write_text", "probe_writable"]
