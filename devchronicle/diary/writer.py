"""Crash-safe replacement of diary documents."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, TextIO, Union

from devchronicle.errors import WriteFailed, check_canceled

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".bak"

Content = Union[str, Callable[[TextIO], None]]


def read_document(path: Path) -> str:
    """Read a document without newline translation so CRLF survives a round trip."""
    with open(path, encoding="utf-8", newline="") as f:
        return f.read()


def backup_path_for(path: Path, now: datetime | None = None) -> Path:
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    candidate = path.with_name(f"{path.name}.{stamp}{BACKUP_SUFFIX}")
    n = 1
    while candidate.exists():
        candidate = path.with_name(f"{path.name}.{stamp}-{n}{BACKUP_SUFFIX}")
        n += 1
    return candidate


def _default_mode() -> int:
    """Mode a plain open() would give a new file under the current umask."""
    umask = os.umask(0)
    os.umask(umask)
    return 0o666 & ~umask


def _discard(tmp: Path) -> None:
    try:
        tmp.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove temporary file {tmp}: {e}")


def atomic_write(
    path: Path,
    content: Content,
    cancel: threading.Event | None = None,
) -> Path | None:
    """Replace ``path`` with ``content`` so readers see the old or new file, never a mix.

    The new content is staged in a temporary file in the destination
    directory and fsynced. An existing destination is copied to a timestamped
    ``.bak`` sibling before the rename. Cancellation is honored up to the
    rename; after a cancel or any failure the destination is unchanged and the
    temporary file is gone.

    Returns the backup path, or None when there was nothing to back up.
    """
    path = Path(path)
    directory = path.parent
    try:
        fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=f".{path.name}.", suffix=".tmp")
    except OSError as e:
        raise WriteFailed(f"Could not stage {path}: {e}") from e
    tmp = Path(tmp_name)

    backup: Path | None = None
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            if callable(content):
                content(f)
            else:
                f.write(content)
            f.flush()
            os.fsync(f.fileno())
        check_canceled(cancel)

        if path.exists():
            shutil.copymode(path, tmp)
            backup = backup_path_for(path)
            shutil.copy2(path, backup)
        else:
            # mkstemp stages with 0600
            os.chmod(tmp, _default_mode())
        check_canceled(cancel)

        os.replace(tmp, path)
    except OSError as e:
        _discard(tmp)
        raise WriteFailed(f"Could not write {path}: {e}") from e
    except BaseException:
        _discard(tmp)
        raise

    logger.info(f"Wrote {path}" + (f" (backup {backup.name})" if backup else ""))
    return backup
