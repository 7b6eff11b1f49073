"""Tar archive packing and validated extraction for host/container transfers.

Extraction is two-phase: every member is resolved and validated against the
destination root first, and nothing is written unless all members pass. A
member that would land outside the root (absolute name, `..` component, link
pointing out) raises PathTraversalError naming that member.
"""

import io
import logging
import tarfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from taskpilot.core.errors import PathTraversalError

logger = logging.getLogger(__name__)

PathValidator = Callable[[Path], bool]


@dataclass
class ArchiveEntry:
    name: str
    kind: str
    size: int


def is_within(root: Path, candidate: Path) -> bool:
    """True if candidate resolves to root or a path beneath it."""
    try:
        candidate.resolve().relative_to(root.resolve())
        return True
    except ValueError:
        return False


def _regular_only(info: tarfile.TarInfo) -> tarfile.TarInfo | None:
    # Links and device files are not transferred into containers
    if info.isfile() or info.isdir():
        return info
    logger.debug(f"Skipping non-regular file {info.name}")
    return None


def pack_path(host_path: Path) -> bytes:
    """Pack a host file or directory contents into an in-memory tar stream.

    A directory's children become top-level members; a file becomes a single
    member named after it.
    """
    host_path = Path(host_path)
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        if host_path.is_dir():
            for child in sorted(host_path.iterdir()):
                tar.add(child, arcname=child.name, filter=_regular_only)
        else:
            tar.add(host_path, arcname=host_path.name, filter=_regular_only)
    return buffer.getvalue()


def list_archive(data: bytes) -> list[ArchiveEntry]:
    entries = []
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
        for member in tar.getmembers():
            if member.isdir():
                kind = "directory"
            elif member.isfile():
                kind = "file"
            elif member.issym() or member.islnk():
                kind = "link"
            else:
                kind = "other"
            entries.append(ArchiveEntry(name=member.name, kind=kind, size=member.size))
    return entries


def _member_target(dest: Path, name: str, strip_top: bool) -> Path:
    """Map a member name onto the host destination."""
    parts = PurePosixPath(name).parts
    if strip_top:
        parts = parts[1:]
    return dest.joinpath(*parts) if parts else dest


def plan_extraction(
    data: bytes,
    dest: Path,
    root: Path,
    strip_top: bool = True,
    validator: PathValidator | None = None,
) -> list[tuple[tarfile.TarInfo, Path]]:
    """Validate every member and return (member, host target) pairs.

    Args:
        data: Tar stream
        dest: Host path the archive's top-level entry maps onto
        root: Directory nothing may be written outside of
        strip_top: Drop the first path component (docker cp names members
            after the copied path)
        validator: Extra predicate every target must satisfy

    Raises:
        PathTraversalError: On the first member escaping root or failing validator
    """
    root = Path(root).resolve()
    if not is_within(root, dest):
        raise PathTraversalError(str(dest), str(root))

    planned = []
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
        for member in tar.getmembers():
            name = member.name
            posix = PurePosixPath(name)
            if posix.is_absolute() or ".." in posix.parts:
                raise PathTraversalError(name, str(root))
            target = _member_target(dest, name, strip_top)
            if not is_within(root, target):
                raise PathTraversalError(name, str(root))
            if validator is not None and not validator(target):
                raise PathTraversalError(name, str(root))
            if member.issym() or member.islnk():
                link = PurePosixPath(member.linkname)
                link_target = target.parent / link if member.issym() else root / link
                if link.is_absolute() or not is_within(root, link_target):
                    raise PathTraversalError(f"{name} -> {member.linkname}", str(root))
                # Links are validated but not materialized on the host
                continue
            if not (member.isfile() or member.isdir()):
                continue
            planned.append((member, target))
    return planned


def extract_archive(
    data: bytes,
    dest: Path,
    root: Path,
    strip_top: bool = True,
    validator: PathValidator | None = None,
) -> list[Path]:
    """Validate then extract a tar stream. Returns the written file paths.

    Raises:
        PathTraversalError: Before anything is written, if any member is rejected
    """
    planned = plan_extraction(data, dest, root, strip_top=strip_top, validator=validator)
    written: list[Path] = []
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
        for member, target in planned:
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            source = tar.extractfile(member)
            if source is None:
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            with source, open(target, "wb") as out:
                out.write(source.read())
            written.append(target)
    logger.info(f"Extracted {len(written)} files into {dest}")
    return written
