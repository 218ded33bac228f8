from __future__ import annotations

import hashlib
import io
import os
import zipfile
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Sequence, Tuple, Union

from ..errors import BundleError, MissingDeclaredFile
from ..models import ArtifactBundle, BundleEntry, ModuleManifest
from ..utils.fs import atomic_write_bytes
from .checksums import sha256_bytes

# Fixed ZIP metadata so identical trees produce identical bytes.
FIXED_DATE_TIME = (1980, 1, 1, 0, 0, 0)
FILE_MODE = 0o644

OPTIONAL_PREFIX = "?"
_GLOB_CHARS = ("*", "?", "[")
_SKIP_DIR_NAMES = {".git"}


def _has_magic(pattern: str) -> bool:
    return any(c in pattern for c in _GLOB_CHARS)


def _clean_pattern(raw: str) -> Tuple[str, bool]:
    s = str(raw or "").strip()
    optional = s.startswith(OPTIONAL_PREFIX)
    if optional:
        s = s[len(OPTIONAL_PREFIX):].strip()
    s = s.replace("\\", "/")
    while s.startswith("./"):
        s = s[2:]
    if not s:
        raise BundleError(f"empty declared file pattern: {raw!r}")
    if s.startswith("/") or (len(s) > 1 and s[1] == ":"):
        raise BundleError(f"declared file pattern must be relative: {raw!r}")
    if ".." in PurePosixPath(s).parts:
        raise BundleError(f"declared file pattern escapes the working root: {raw!r}")
    return s.rstrip("/"), optional


def _under_symlink(root: Path, path: Path) -> bool:
    """True if ``path`` or any directory between it and ``root`` is a symlink."""
    cur = path
    while cur != root and cur != cur.parent:
        if cur.is_symlink():
            return True
        cur = cur.parent
    return False


def _walk_files(directory: Path) -> Iterable[Path]:
    # followlinks=False: symlinked directories are listed but never descended into.
    for dirpath, dirnames, filenames in os.walk(directory, followlinks=False):
        dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIR_NAMES and not (Path(dirpath) / d).is_symlink())
        for fn in sorted(filenames):
            full = Path(dirpath) / fn
            if full.is_symlink() or not full.is_file():
                continue
            yield full


def resolve_declared_files(patterns: Sequence[str], working_root: Union[str, Path]) -> List[Tuple[str, Path]]:
    """Expand declared paths/globs under ``working_root``.

    Returns ``(relative_posix_path, absolute_path)`` pairs sorted by relative
    path. Directories expand recursively; symlinks are skipped. A pattern with
    a leading ``?`` is optional.

    Raises:
        MissingDeclaredFile: a non-optional pattern matched no file.
        BundleError: a pattern is empty, absolute or escapes the root.
    """
    root = Path(working_root).resolve()
    if not root.is_dir():
        raise BundleError(f"working root is not a directory: {root}")

    found: Dict[str, Path] = {}
    for raw in patterns:
        pattern, optional = _clean_pattern(raw)

        if _has_magic(pattern):
            candidates = sorted(root.glob(pattern))
        else:
            candidate = root / pattern
            candidates = [candidate] if os.path.lexists(candidate) else []

        matched = 0
        for c in candidates:
            if _under_symlink(root, c):
                continue
            if c.is_dir():
                files: Iterable[Path] = _walk_files(c)
            elif c.is_file():
                files = [c]
            else:
                continue
            for f in files:
                rel = f.relative_to(root).as_posix()
                found.setdefault(rel, f)
                matched += 1

        if matched == 0 and not optional:
            raise MissingDeclaredFile(f"declared file not found: {raw!r} (root={root})")

    return sorted(found.items(), key=lambda t: t[0])


def bundle(
    manifest: ModuleManifest,
    declared_files: Sequence[str],
    working_root: Union[str, Path],
) -> ArtifactBundle:
    """Collect the declared file set into an in-memory bundle.

    Falls back to the files the manifest itself references when no patterns
    are given.
    """
    patterns = list(declared_files or ()) or list(manifest.declared_files)
    if not patterns:
        raise BundleError("no declared files to bundle")

    entries = []
    for rel, path in resolve_declared_files(patterns, working_root):
        try:
            data = path.read_bytes()
        except OSError as e:
            raise BundleError(f"cannot read declared file {rel}: {e}") from e
        entries.append(BundleEntry(path=rel, data=data))

    return ArtifactBundle(
        entries=tuple(sorted(entries, key=lambda e: e.path)),
        produced_version=manifest.version,
        identifier=manifest.identifier,
    )


def _zipinfo(name: str) -> zipfile.ZipInfo:
    zi = zipfile.ZipInfo(filename=name, date_time=FIXED_DATE_TIME)
    zi.compress_type = zipfile.ZIP_DEFLATED
    zi.create_system = 3
    zi.external_attr = (FILE_MODE & 0xFFFF) << 16
    return zi


def archive_bytes(b: ArtifactBundle) -> bytes:
    """Serialize a bundle as a deterministic ZIP."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, mode="w") as zf:
        for e in sorted(b.entries, key=lambda x: x.path):
            zf.writestr(_zipinfo(e.path), e.data)
    return buf.getvalue()


def write_archive(b: ArtifactBundle, zip_path: Path) -> Tuple[str, int]:
    """Write the bundle archive atomically.

    Returns:
        (sha256, bytes_size)
    """
    data = archive_bytes(b)
    atomic_write_bytes(zip_path, data)
    return sha256_bytes(data), len(data)


def content_digest(b: ArtifactBundle) -> str:
    """Stable SHA-256 over the sorted entry sequence, independent of ZIP encoding."""
    h = hashlib.sha256()
    for e in sorted(b.entries, key=lambda x: x.path):
        h.update(e.path.encode("utf-8"))
        h.update(b"\0")
        h.update(str(e.size).encode("ascii"))
        h.update(b"\0")
        h.update(e.data)
    return h.hexdigest()
