from __future__ import annotations

import threading
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..artifacts.checksums import sha256_bytes
from ..contracts import ReleaseStore
from ..errors import PermanentError
from ..models import ReleaseAsset, ReleaseRecord, UploadAsset

# Hook signature: (operation, tag) -> None. May raise to simulate remote failures.
FailureHook = Callable[[str, str], None]


class InMemoryReleaseStore(ReleaseStore):
    """Process-local release store.

    Used for dry runs and tests. ``fail_hook`` is called before every
    operation with ``("find" | "create" | "upsert", tag)`` and may raise.
    """

    def __init__(self, fail_hook: Optional[FailureHook] = None):
        self._lock = threading.Lock()
        self._records: Dict[str, ReleaseRecord] = {}
        self._blobs: Dict[Tuple[str, str], bytes] = {}
        self._next_id = 1
        self.fail_hook = fail_hook
        self.calls: List[Tuple[str, str]] = []

    def _before(self, op: str, tag: str) -> None:
        with self._lock:
            self.calls.append((op, tag))
        if self.fail_hook is not None:
            self.fail_hook(op, tag)

    def find_release(self, tag: str) -> Optional[ReleaseRecord]:
        self._before("find", tag)
        with self._lock:
            return self._records.get(tag)

    def create_release(self, tag: str, name: str, draft: bool = False, prerelease: bool = False) -> ReleaseRecord:
        self._before("create", tag)
        with self._lock:
            if tag in self._records:
                raise PermanentError(f"release already exists: {tag}")
            rec = ReleaseRecord(
                tag=tag,
                name=name,
                draft=draft,
                prerelease=prerelease,
                release_id=str(self._next_id),
            )
            self._next_id += 1
            self._records[tag] = rec
            return rec

    def upsert_assets(self, record: ReleaseRecord, assets: Sequence[UploadAsset]) -> ReleaseRecord:
        self._before("upsert", record.tag)
        with self._lock:
            current = self._records.get(record.tag)
            if current is None:
                raise PermanentError(f"release not found: {record.tag}")
            # Build the full new state first, then swap it in.
            new_assets = dict(current.assets)
            new_blobs: Dict[Tuple[str, str], bytes] = {}
            for a in assets:
                new_assets[a.name] = ReleaseAsset(
                    name=a.name,
                    size=len(a.data),
                    sha256=sha256_bytes(a.data),
                    asset_id=f"{current.release_id}:{a.name}",
                )
                new_blobs[(record.tag, a.name)] = bytes(a.data)
            updated = replace(current, assets=new_assets)
            self._records[record.tag] = updated
            self._blobs.update(new_blobs)
            return updated

    def read_asset(self, tag: str, name: str) -> bytes:
        with self._lock:
            try:
                return self._blobs[(tag, name)]
            except KeyError:
                raise PermanentError(f"asset not found: {tag}/{name}") from None

    def put_record(self, record: ReleaseRecord, blobs: Optional[Dict[str, bytes]] = None) -> None:
        """Seed a record directly, bypassing hooks."""
        with self._lock:
            self._records[record.tag] = record
            for name, data in (blobs or {}).items():
                self._blobs[(record.tag, name)] = bytes(data)

    def describe(self) -> Dict[str, str]:
        return {"class": self.__class__.__name__, "releases": str(len(self._records))}
