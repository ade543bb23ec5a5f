"""Filesystem access for the flat directory of invoice text artifacts.

Like :mod:`delivery_ledger.data_manager` this module performs I/O only; the
naming, backup, and retrieval rules live in
:mod:`delivery_ledger.txt_artifacts`. Missing files surface as the builtin
``FileNotFoundError`` so the caller can decide how to report them; every other
operating system failure is wrapped in :class:`ArtifactIOError`.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from . import log
from .errors import ArtifactIOError


@dataclass(frozen=True)
class FileStat:
    """Size and timestamps of a single artifact file."""

    name: str
    size: int
    created: datetime
    modified: datetime


def ensure_directory(directory: Path) -> Path:
    """Create ``directory`` (and parents) when it does not exist yet."""

    directory = Path(directory)
    if not directory.exists():
        log.info("Creating artifact directory '%s'", directory)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ArtifactIOError(f"Unable to create artifact directory {directory}: {exc}") from exc
    return directory


def list_names(directory: Path) -> list[str]:
    """Return the names of the regular files directly inside ``directory``."""

    try:
        return sorted(entry.name for entry in Path(directory).iterdir() if entry.is_file())
    except FileNotFoundError:
        return []
    except OSError as exc:
        raise ArtifactIOError(f"Unable to list {directory}: {exc}") from exc


def read_bytes(path: Path) -> bytes:
    try:
        return Path(path).read_bytes()
    except FileNotFoundError:
        raise
    except OSError as exc:
        raise ArtifactIOError(f"Unable to read {path}: {exc}") from exc


def write_bytes(path: Path, data: bytes) -> int:
    """Write ``data`` to ``path``, replacing any previous content.

    Returns:
        int: Number of bytes written.
    """

    try:
        Path(path).write_bytes(data)
    except OSError as exc:
        raise ArtifactIOError(f"Unable to write {path}: {exc}") from exc
    return len(data)


def delete(path: Path) -> None:
    try:
        Path(path).unlink()
    except FileNotFoundError:
        raise
    except OSError as exc:
        raise ArtifactIOError(f"Unable to delete {path}: {exc}") from exc


def stat(path: Path) -> FileStat:
    """Return :class:`FileStat` for ``path``.

    Creation time uses ``st_birthtime`` where the platform records it and
    falls back to ``st_ctime`` otherwise.
    """

    path = Path(path)
    try:
        result = os.stat(path)
    except FileNotFoundError:
        raise
    except OSError as exc:
        raise ArtifactIOError(f"Unable to stat {path}: {exc}") from exc

    created = getattr(result, "st_birthtime", result.st_ctime)
    return FileStat(
        name=path.name,
        size=result.st_size,
        created=datetime.fromtimestamp(created, UTC),
        modified=datetime.fromtimestamp(result.st_mtime, UTC),
    )
