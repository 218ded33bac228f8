"""Module manifest (module.json) reading and version handling.

The descriptor is plain JSON. Reads keep the whole mapping so that a version
write or URL injection changes only the fields it owns. Writes keep the
descriptor's key order and always use two-space indent and a trailing newline
so successive releases produce minimal diffs.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import (
    InvalidTag,
    InvalidVersion,
    ManifestNotFound,
    ManifestParseError,
    ManifestSchemaError,
)
from .models import DEFAULT_LATEST_TAG, ModuleManifest
from .utils.fs import atomic_write_text

_VERSION_RE = re.compile(r"^\d+(?:\.\d+){0,3}(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$")
_REPOSITORY_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")
_TAG_REF_PREFIX = "refs/tags/"

# Descriptor keys listing files the module ships.
_FILE_LIST_KEYS = ("esmodules", "scripts", "styles")
_PATH_OBJECT_KEYS = ("languages", "packs")


def _as_path(path: Union[str, Path]) -> Path:
    return path if isinstance(path, Path) else Path(str(path))


def _dump(data: Dict[str, Any]) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2) + "\n"


def _declared_from_descriptor(data: Dict[str, Any], file_name: str) -> List[str]:
    out: List[str] = [file_name]
    for key in _FILE_LIST_KEYS:
        items = data.get(key)
        if isinstance(items, list):
            out.extend(str(x).strip() for x in items if isinstance(x, str) and x.strip())
    for key in _PATH_OBJECT_KEYS:
        items = data.get(key)
        if not isinstance(items, list):
            continue
        for item in items:
            if isinstance(item, dict) and isinstance(item.get("path"), str) and item["path"].strip():
                out.append(item["path"].strip())

    seen = set()
    unique: List[str] = []
    for p in out:
        if p.startswith("./"):
            p = p[2:]
        if p in seen:
            continue
        seen.add(p)
        unique.append(p)
    return unique


def _from_mapping(data: Dict[str, Any], path: Optional[Path]) -> ModuleManifest:
    where = str(path) if path is not None else "<memory>"
    identifier = data.get("id")
    if not isinstance(identifier, str) or not identifier.strip():
        # Pre-v10 descriptors use "name" as the package identifier.
        identifier = data.get("name")
    if not isinstance(identifier, str) or not identifier.strip():
        raise ManifestSchemaError(f"manifest missing identifier ('id' or 'name'): {where}")

    version = data.get("version")
    if not isinstance(version, str) or not version.strip():
        raise ManifestSchemaError(f"manifest missing 'version': {where}")

    file_name = path.name if path is not None else "module.json"
    return ModuleManifest(
        identifier=identifier.strip(),
        version=version.strip(),
        declared_files=tuple(_declared_from_descriptor(data, file_name)),
        path=path,
        data=dict(data),
    )


def read_manifest(path: Union[str, Path]) -> ModuleManifest:
    """Load a module manifest.

    Raises:
        ManifestNotFound: the path does not exist or is not a file.
        ManifestParseError: the content is not a JSON object.
        ManifestSchemaError: identifier or version is missing.
    """
    p = _as_path(path)
    if not p.exists() or not p.is_file():
        raise ManifestNotFound(f"manifest not found: {p}")

    try:
        text = p.read_text(encoding="utf-8")
        data = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ManifestParseError(f"manifest is not valid JSON: {p}: {e}") from e
    if not isinstance(data, dict):
        raise ManifestParseError(f"manifest root must be a JSON object: {p}")

    return _from_mapping(data, p)


def normalize_version(value: str) -> str:
    """Strip a leading channel prefix ("v") and validate the version shape."""
    v = str(value or "").strip()
    if v[:1] in ("v", "V"):
        v = v[1:]
    if not v:
        raise InvalidVersion("version must not be empty")
    if not _VERSION_RE.match(v):
        raise InvalidVersion(f"invalid version string: {value!r}")
    return v


def is_valid_version(value: str) -> bool:
    return bool(_VERSION_RE.match(str(value or "").strip()))


def _persist(manifest: ModuleManifest, data: Dict[str, Any], persist: bool = True) -> ModuleManifest:
    updated = _from_mapping(data, manifest.path)
    if persist:
        save_manifest(updated)
    return updated


def save_manifest(manifest: ModuleManifest) -> None:
    """Write ``manifest.data`` to ``manifest.path``. No-op for in-memory manifests."""
    if manifest.path is not None:
        atomic_write_text(manifest.path, _dump(manifest.data))


def write_version(manifest: ModuleManifest, new_version: str, *, persist: bool = True) -> ModuleManifest:
    """Set the manifest version and rewrite the persisted form.

    The new version is normalized first (see ``normalize_version``). Every other
    field is carried over unchanged. A manifest without a path, or
    ``persist=False``, is updated in memory only.
    """
    version = normalize_version(new_version)
    data = dict(manifest.data)
    data["version"] = version
    return _persist(manifest, data, persist)


def extract_version_from_tag(tag: str, prefix: str = "v") -> str:
    """Return the version carried by a release tag.

    Accepts a bare tag ("v1.2.0") or a full ref ("refs/tags/v1.2.0").
    """
    t = str(tag or "").strip()
    if t.startswith(_TAG_REF_PREFIX):
        t = t[len(_TAG_REF_PREFIX):]
    if not prefix or not t.startswith(prefix):
        raise InvalidTag(f"tag {tag!r} does not start with required prefix {prefix!r}")
    v = t[len(prefix):]
    if not _VERSION_RE.match(v):
        raise InvalidTag(f"tag {tag!r} does not carry a valid version")
    return v


def release_download_url(repository: str, tag: str, asset_name: str) -> str:
    return f"https://github.com/{repository}/releases/download/{tag}/{asset_name}"


def latest_download_url(repository: str, asset_name: str, latest_tag: str = DEFAULT_LATEST_TAG) -> str:
    # /releases/latest/download/* resolves to the release GitHub marks as latest.
    # A custom latest tag is addressed explicitly.
    if latest_tag == DEFAULT_LATEST_TAG:
        return f"https://github.com/{repository}/releases/latest/download/{asset_name}"
    return release_download_url(repository, latest_tag, asset_name)


def inject_release_urls(
    manifest: ModuleManifest,
    *,
    repository: str,
    archive_name: str,
    tag: str,
    latest_tag: str = DEFAULT_LATEST_TAG,
    persist: bool = True,
) -> ModuleManifest:
    """Point the manifest's ``manifest`` and ``download`` URLs at the release assets.

    ``manifest`` always tracks the latest release so installed modules see
    updates; ``download`` is pinned to the release identified by ``tag``.
    """
    repo = str(repository or "").strip()
    if not _REPOSITORY_RE.match(repo):
        raise ManifestSchemaError(f"repository must be 'owner/name', got {repository!r}")
    if not str(tag or "").strip():
        raise ManifestSchemaError("release tag for download URL must not be empty")

    data = dict(manifest.data)
    data["manifest"] = latest_download_url(repo, manifest.file_name, latest_tag)
    data["download"] = release_download_url(repo, str(tag).strip(), archive_name)
    return _persist(manifest, data, persist)


def manifest_bytes(manifest: ModuleManifest) -> bytes:
    """Bytes uploaded as the standalone manifest asset.

    The persisted file is used verbatim when present so the asset matches the
    copy inside the archive.
    """
    if manifest.path is not None and manifest.path.is_file():
        return manifest.path.read_bytes()
    return _dump(manifest.data).encode("utf-8")
