"""
site_publisher.bundler — Split a build output tree into size-bounded bundles.

Packing rule (greedy append):
    - Walk entries in lexicographic path order.
    - Append each entry to the current bundle unless doing so would push
      the bundle past size_limit; then close the bundle and start a new one.
    - An entry larger than size_limit still gets a bundle of its own.

Bundles serialize to ZIP archives that are byte-identical for identical
input on any machine: stored (uncompressed) members, fixed timestamps,
fixed permissions and creator system, members in bundle order.
"""

from __future__ import annotations

import io
import os
import zipfile
from collections.abc import Iterator
from pathlib import Path

from aws_lambda_powertools import Logger

from site_publisher.exceptions import (
    BuildOutputEmpty,
    BuildOutputMissing,
    InputError,
    InvalidBuildPath,
)
from site_publisher.models import BuildOutput, Bundle, FileEntry

logger = Logger(service="site-publisher")

FIXED_ZIP_DATE_TIME = (1980, 1, 1, 0, 0, 0)
_ZIP_FILE_MODE = 0o100644
_ZIP_CREATE_SYSTEM_UNIX = 3

STUB_INDEX_HTML = """<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <title>{site}</title>
  </head>
  <body>
    <p>{site} is running in development mode. Start your local dev server to see the site.</p>
  </body>
</html>
"""


def size_limit_bytes(megabytes: int | float) -> int:
    return int(megabytes * 1024 * 1024)


def validate_relative_path(path: str) -> None:
    """Reject absolute paths, traversal segments and non-normalized separators."""
    if not path:
        raise InvalidBuildPath(path, "empty path")
    if "\\" in path:
        raise InvalidBuildPath(path, "backslash separators are not allowed")
    if path.startswith("/"):
        raise InvalidBuildPath(path, "path must be relative")
    for segment in path.split("/"):
        if segment in ("", ".", ".."):
            raise InvalidBuildPath(path, f"path segment {segment!r} is not allowed")


def load_build_output(root: str | os.PathLike[str]) -> BuildOutput:
    """Read the file tree under root without loading file contents."""
    root_path = Path(root)
    if not root_path.is_dir():
        raise BuildOutputMissing(str(root_path))

    entries: list[FileEntry] = []
    for dirpath, dirnames, filenames in os.walk(root_path):
        dirnames.sort()
        for name in sorted(filenames):
            full_path = Path(dirpath) / name
            if not full_path.is_file():
                continue
            rel = full_path.relative_to(root_path).as_posix()
            validate_relative_path(rel)
            entries.append(FileEntry(path=rel, size=full_path.stat().st_size, source=full_path))

    if not entries:
        raise BuildOutputEmpty(str(root_path))

    entries.sort(key=lambda entry: entry.path)
    logger.info(
        "Loaded build output",
        root=str(root_path),
        file_count=len(entries),
        total_bytes=sum(e.size for e in entries),
    )
    return BuildOutput(root=str(root_path), entries=tuple(entries))


def stub_build_output(site: str) -> BuildOutput:
    """Placeholder content deployed in dev mode instead of a real build."""
    return BuildOutput.from_mapping(
        {"index.html": STUB_INDEX_HTML.format(site=site).encode("utf-8")},
        root="<stub>",
    )


def split(tree: BuildOutput, size_limit: int) -> list[Bundle]:
    """Split tree into bundles of at most size_limit bytes each (greedy append).

    Returns bundles numbered contiguously from 0. The returned list length
    is the authoritative bundle count.
    """
    if size_limit <= 0:
        raise InputError(f"size_limit must be positive, got {size_limit}")
    if not tree.entries:
        raise BuildOutputEmpty(tree.root)

    ordered = sorted(tree.entries, key=lambda entry: entry.path)
    seen: set[str] = set()
    bundles: list[Bundle] = []
    current: list[FileEntry] = []
    current_size = 0

    for entry in ordered:
        validate_relative_path(entry.path)
        if entry.path in seen:
            raise InvalidBuildPath(entry.path, "duplicate path")
        seen.add(entry.path)

        if current and current_size + entry.size > size_limit:
            bundles.append(Bundle(index=len(bundles), entries=tuple(current)))
            current = []
            current_size = 0
        if entry.size > size_limit:
            logger.warning(
                "Entry exceeds bundle size limit; packing it on its own",
                path=entry.path,
                size=entry.size,
                size_limit=size_limit,
            )
        current.append(entry)
        current_size += entry.size

    if current:
        bundles.append(Bundle(index=len(bundles), entries=tuple(current)))

    logger.info("Split build output", bundle_count=len(bundles), size_limit=size_limit)
    return bundles


def serialize_bundle(bundle: Bundle) -> bytes:
    """Serialize a bundle to deterministic ZIP bytes."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_STORED) as archive:
        for entry in bundle.entries:
            info = zipfile.ZipInfo(entry.path, date_time=FIXED_ZIP_DATE_TIME)
            info.compress_type = zipfile.ZIP_STORED
            info.create_system = _ZIP_CREATE_SYSTEM_UNIX
            info.external_attr = (_ZIP_FILE_MODE & 0xFFFF) << 16
            archive.writestr(info, entry.read())
    return buffer.getvalue()


def read_bundle(data: bytes) -> Iterator[tuple[str, bytes]]:
    """Yield (relative path, content) for each file member of a bundle archive."""
    with zipfile.ZipFile(io.BytesIO(data), "r") as archive:
        for info in archive.infolist():
            if info.is_dir():
                continue
            validate_relative_path(info.filename)
            yield info.filename, archive.read(info)
