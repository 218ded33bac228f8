from __future__ import annotations

import json
import re
import shutil
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from ..artifacts.checksums import sha256_bytes
from ..contracts import ReleaseStore
from ..errors import PermanentError
from ..models import ReleaseAsset, ReleaseRecord, UploadAsset
from ..utils.fs import atomic_write_text, ensure_dir, replace_dir

_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")

RECORD_FILE = "release.json"
ASSETS_DIR = "assets"


def _check_name(kind: str, value: str) -> str:
    v = str(value or "").strip()
    if not _SAFE_NAME_RE.match(v):
        raise PermanentError(f"invalid {kind} for local release store: {value!r}")
    return v


def _record_to_dict(rec: ReleaseRecord) -> Dict[str, Any]:
    return {
        "tag": rec.tag,
        "name": rec.name,
        "draft": rec.draft,
        "prerelease": rec.prerelease,
        "release_id": rec.release_id,
        "assets": {n: {"size": a.size, "sha256": a.sha256} for n, a in sorted(rec.assets.items())},
    }


def _record_from_dict(d: Dict[str, Any]) -> ReleaseRecord:
    assets = {}
    for name, meta in (d.get("assets") or {}).items():
        meta = meta if isinstance(meta, dict) else {}
        assets[str(name)] = ReleaseAsset(
            name=str(name),
            size=int(meta.get("size") or 0),
            sha256=str(meta.get("sha256") or ""),
            asset_id=str(name),
        )
    return ReleaseRecord(
        tag=str(d.get("tag") or ""),
        name=str(d.get("name") or ""),
        assets=assets,
        draft=bool(d.get("draft")),
        prerelease=bool(d.get("prerelease")),
        release_id=str(d.get("release_id") or ""),
    )


class LocalDirReleaseStore(ReleaseStore):
    """Release store on the local filesystem.

    Layout::

        <base_dir>/<tag>/release.json
        <base_dir>/<tag>/assets/<asset_name>

    Asset replacement stages a full copy of the release directory and swaps
    it in once every asset is written.
    """

    def __init__(self, base_dir: Path):
        self.base_dir = base_dir

    def _release_dir(self, tag: str) -> Path:
        return self.base_dir / _check_name("tag", tag)

    def find_release(self, tag: str) -> Optional[ReleaseRecord]:
        p = self._release_dir(tag) / RECORD_FILE
        if not p.exists():
            return None
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise PermanentError(f"corrupt release record {p}: {e}") from e
        return _record_from_dict(data)

    def create_release(self, tag: str, name: str, draft: bool = False, prerelease: bool = False) -> ReleaseRecord:
        rdir = self._release_dir(tag)
        if (rdir / RECORD_FILE).exists():
            raise PermanentError(f"release already exists: {tag}")
        rec = ReleaseRecord(tag=tag, name=name, draft=draft, prerelease=prerelease, release_id=tag)
        ensure_dir(rdir / ASSETS_DIR)
        atomic_write_text(rdir / RECORD_FILE, json.dumps(_record_to_dict(rec), indent=2, sort_keys=True) + "\n")
        return rec

    def upsert_assets(self, record: ReleaseRecord, assets: Sequence[UploadAsset]) -> ReleaseRecord:
        current = self.find_release(record.tag)
        if current is None:
            raise PermanentError(f"release not found: {record.tag}")

        rdir = self._release_dir(record.tag)
        staged = rdir.with_name(rdir.name + ".staging")
        if staged.exists():
            shutil.rmtree(staged)
        shutil.copytree(rdir, staged)
        try:
            new_assets = dict(current.assets)
            for a in assets:
                name = _check_name("asset name", a.name)
                ensure_dir(staged / ASSETS_DIR)
                (staged / ASSETS_DIR / name).write_bytes(a.data)
                new_assets[name] = ReleaseAsset(name=name, size=len(a.data), sha256=sha256_bytes(a.data), asset_id=name)
            updated = ReleaseRecord(
                tag=current.tag,
                name=current.name,
                assets=new_assets,
                draft=current.draft,
                prerelease=current.prerelease,
                release_id=current.release_id,
            )
            (staged / RECORD_FILE).write_text(
                json.dumps(_record_to_dict(updated), indent=2, sort_keys=True) + "\n", encoding="utf-8"
            )
            replace_dir(staged, rdir)
        finally:
            if staged.exists():
                shutil.rmtree(staged, ignore_errors=True)
        return updated

    def read_asset(self, tag: str, name: str) -> bytes:
        p = self._release_dir(tag) / ASSETS_DIR / _check_name("asset name", name)
        if not p.exists():
            raise PermanentError(f"asset not found: {tag}/{name}")
        return p.read_bytes()

    def describe(self) -> Dict[str, str]:
        return {"class": self.__class__.__name__, "base_dir": str(self.base_dir)}
