import contextlib
import os
import tempfile
from pathlib import Path

from cass_memory.core.errors import PersistenceError


def _discard(tmp_path: str) -> None:
    with contextlib.suppress(FileNotFoundError):
        os.unlink(tmp_path)


def write_atomic(path: str | os.PathLike[str], data: bytes | str) -> None:
    """Replace ``path`` with ``data`` so readers see either the old or the new file.

    Writes to a temp file in the target's directory, fsyncs it, then renames it
    over the target. On failure the temp file is removed and the previous file
    is left as it was.

    Raises:
        PersistenceError: If writing or renaming fails
    """
    target = Path(path)
    payload = data.encode("utf-8") if isinstance(data, str) else data

    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
    except OSError as e:
        raise PersistenceError(f"Failed to prepare atomic write to {target}: {e}") from e

    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, target)
    except OSError as e:
        _discard(tmp_path)
        raise PersistenceError(f"Failed to atomic write to {target}: {e}") from e
    except BaseException:
        _discard(tmp_path)
        raise
