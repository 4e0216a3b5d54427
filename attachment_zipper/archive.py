"""ZIP packaging for downloaded attachments."""

from __future__ import annotations

import errno
import io
import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Set, Union

logger = logging.getLogger(__name__)

COMPRESSION_LEVEL = 6


class ArchiveWriteError(RuntimeError):
    """Raised when the archive cannot be written to disk."""


@dataclass(frozen=True)
class NamedEntry:
    name: str
    payload: bytes


def numbered_name(name: str, count: int) -> str:
    """Return ``name`` with ``_<count>`` inserted before its last extension.

    The split happens at the last dot, so ``archive.tar.gz`` becomes
    ``archive.tar_1.gz``. A leading dot is not an extension separator.
    """
    dot = name.rfind(".")
    if dot > 0:
        return f"{name[:dot]}_{count}{name[dot:]}"
    return f"{name}_{count}"


def deduplicate_filenames(entries: Iterable[NamedEntry]) -> List[NamedEntry]:
    seen: Dict[str, int] = {}
    used: Set[str] = set()
    result: List[NamedEntry] = []

    for entry in entries:
        count = seen.get(entry.name, 0)
        final_name = entry.name if count == 0 else numbered_name(entry.name, count)

        # Keep going past names an earlier entry already produced.
        while final_name in used:
            count += 1
            final_name = numbered_name(entry.name, count)

        seen[entry.name] = count + 1
        used.add(final_name)
        result.append(NamedEntry(name=final_name, payload=entry.payload))

    return result


def storable_name(name: str) -> str:
    # zipfile cuts names at the first NUL.
    return name.replace("\x00", "_")


def build_archive(entries: Iterable[NamedEntry]) -> bytes:
    buffer = io.BytesIO()
    storable = [NamedEntry(name=storable_name(entry.name), payload=entry.payload) for entry in entries]
    with zipfile.ZipFile(
        buffer,
        mode="w",
        compression=zipfile.ZIP_DEFLATED,
        compresslevel=COMPRESSION_LEVEL,
    ) as archive:
        for entry in deduplicate_filenames(storable):
            archive.writestr(entry.name, entry.payload)
    return buffer.getvalue()


def write_archive(data: bytes, output_path: Union[str, Path]) -> Path:
    path = Path(output_path)
    if path.exists():
        logger.warning("Overwriting existing file: %s", path)

    # Write beside the target and swap in, so a failed write leaves any old archive intact.
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        tmp_path.write_bytes(data)
        tmp_path.replace(path)
    except OSError as err:
        _discard_partial(tmp_path)
        raise ArchiveWriteError(_describe_write_failure(err, path)) from err

    return path


def _discard_partial(tmp_path: Path) -> None:
    try:
        tmp_path.unlink(missing_ok=True)
    except OSError as err:
        logger.warning("Could not remove partial file %s: %s", tmp_path, err)


def _describe_write_failure(err: OSError, path: Path) -> str:
    if err.errno in {errno.EACCES, errno.EPERM}:
        return f'Permission denied: Cannot write to "{path}". Check file/directory permissions.'
    if err.errno == errno.ENOSPC:
        return f'Disk full: Not enough space to write "{path}".'
    if err.errno == errno.EROFS:
        return f'Read-only filesystem: Cannot write to "{path}".'
    reason = err.strerror or str(err)
    return f'Failed to write ZIP file to "{path}": {reason}'
