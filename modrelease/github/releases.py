"""GitHub Releases backed release store.

Talks to the GitHub REST API with ``requests``. Errors are classified so the
reconciler can retry transient failures:

- connection errors, timeouts, HTTP 429, HTTP 5xx and 403 with an exhausted
  rate limit raise ``RetryableError``;
- every other unexpected status raises ``PermanentError``.

Asset replacement is staged: new assets are uploaded under temporary names.
Only after every upload succeeded are the old assets renamed aside and the
staged ones renamed into place, in the order given, so the caller decides which
asset goes live last. A failed swap restores the old names.
"""

from __future__ import annotations

import os
import sys
import urllib.parse
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from ..artifacts.checksums import sha256_bytes
from ..contracts import ReleaseStore
from ..errors import PermanentError, RetryableError
from ..models import ReleaseAsset, ReleaseRecord, UploadAsset

DEFAULT_API_URL = "https://api.github.com"
DEFAULT_UPLOADS_URL = "https://uploads.github.com"
STAGING_MARKER = ".staging-"
OLD_MARKER = ".old-"


def _api_headers(token: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": "2022-11-28",
        "User-Agent": "modrelease",
    }


def token_from_env(env_var: str = "GITHUB_TOKEN") -> str:
    return str(os.environ.get(env_var, "") or os.environ.get("GH_TOKEN", "") or "").strip()


def repository_from_env() -> str:
    repo = str(os.environ.get("GITHUB_REPOSITORY", "") or "").strip()
    return repo if "/" in repo else ""


def _asset_from_json(a: Dict[str, Any]) -> ReleaseAsset:
    digest = str(a.get("digest") or "")
    sha = digest.split(":", 1)[1] if digest.startswith("sha256:") else ""
    return ReleaseAsset(
        name=str(a.get("name") or ""),
        size=int(a.get("size") or 0),
        sha256=sha,
        asset_id=str(a.get("id") or ""),
    )


def _record_from_json(data: Dict[str, Any]) -> ReleaseRecord:
    assets: Dict[str, ReleaseAsset] = {}
    for a in data.get("assets") or []:
        if not isinstance(a, dict):
            continue
        asset = _asset_from_json(a)
        if asset.name:
            assets[asset.name] = asset
    return ReleaseRecord(
        tag=str(data.get("tag_name") or ""),
        name=str(data.get("name") or ""),
        assets=assets,
        draft=bool(data.get("draft")),
        prerelease=bool(data.get("prerelease")),
        release_id=str(data.get("id") or ""),
        html_url=str(data.get("html_url") or ""),
    )


def _staging_name(asset: UploadAsset) -> str:
    return f"{asset.name}{STAGING_MARKER}{sha256_bytes(asset.data)[:12]}"


class GitHubReleaseStore(ReleaseStore):
    def __init__(
        self,
        *,
        repository: str,
        token: str,
        api_url: str = DEFAULT_API_URL,
        uploads_url: str = DEFAULT_UPLOADS_URL,
        timeout_s: float = 30.0,
        upload_timeout_s: float = 120.0,
        session: Optional[requests.Session] = None,
    ):
        self.repository = repository
        self.api_url = api_url.rstrip("/")
        self.uploads_url = uploads_url.rstrip("/")
        self.timeout_s = timeout_s
        self.upload_timeout_s = upload_timeout_s
        self.session = session if session is not None else requests.Session()
        self._token = token

    @property
    def _base(self) -> str:
        return f"{self.api_url}/repos/{self.repository}"

    def _request(self, method: str, url: str, *, ok: Sequence[int], timeout: Optional[float] = None, **kwargs: Any) -> requests.Response:
        headers = _api_headers(self._token)
        headers.update(kwargs.pop("headers", {}) or {})
        try:
            r = self.session.request(method, url, headers=headers, timeout=timeout or self.timeout_s, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise RetryableError(f"{method} {url} failed: {e}") from e
        except requests.RequestException as e:
            raise PermanentError(f"{method} {url} failed: {e}") from e

        if r.status_code in ok:
            return r
        detail = f"{method} {url} -> HTTP {r.status_code}: {r.text[:800]}"
        if r.status_code == 429 or r.status_code >= 500:
            raise RetryableError(detail)
        if r.status_code == 403 and str(r.headers.get("X-RateLimit-Remaining", "")) == "0":
            raise RetryableError(detail)
        raise PermanentError(detail)

    def _get_release(self, release_id: str) -> ReleaseRecord:
        r = self._request("GET", f"{self._base}/releases/{release_id}", ok=(200,))
        return _record_from_json(r.json())

    def find_release(self, tag: str) -> Optional[ReleaseRecord]:
        quoted = urllib.parse.quote(tag, safe="")
        r = self._request("GET", f"{self._base}/releases/tags/{quoted}", ok=(200, 404))
        if r.status_code == 200:
            return _record_from_json(r.json())

        # Draft releases are not served by the tags endpoint.
        r = self._request("GET", f"{self._base}/releases", ok=(200,), params={"per_page": 100})
        for item in r.json() or []:
            if isinstance(item, dict) and str(item.get("tag_name") or "") == tag:
                return _record_from_json(item)
        return None

    def create_release(self, tag: str, name: str, draft: bool = False, prerelease: bool = False) -> ReleaseRecord:
        payload = {
            "tag_name": tag,
            "name": name,
            "body": "",
            "draft": bool(draft),
            "prerelease": bool(prerelease),
            "generate_release_notes": False,
        }
        r = self._request("POST", f"{self._base}/releases", ok=(201,), json=payload)
        return _record_from_json(r.json())

    def _upload(self, release_id: str, name: str, asset: UploadAsset) -> ReleaseAsset:
        url = f"{self.uploads_url}/repos/{self.repository}/releases/{release_id}/assets"
        r = self._request(
            "POST",
            url,
            ok=(201,),
            timeout=self.upload_timeout_s,
            params={"name": name},
            data=asset.data,
            headers={"Content-Type": asset.content_type or "application/octet-stream"},
        )
        return _asset_from_json(r.json())

    def _delete_asset(self, asset_id: str) -> None:
        self._request("DELETE", f"{self._base}/releases/assets/{asset_id}", ok=(204, 404))

    def _rename_asset(self, asset_id: str, name: str) -> None:
        self._request("PATCH", f"{self._base}/releases/assets/{asset_id}", ok=(200,), json={"name": name})

    def _quiet(self, what: str, fn, *args: Any) -> None:
        try:
            fn(*args)
        except (RetryableError, PermanentError) as e:
            print(f"[modrelease][WARN] could not {what}: {e}", file=sys.stderr)

    def _clear_leftovers(self, current: ReleaseRecord) -> bool:
        """Remove staged uploads and set-aside assets left by an interrupted run.

        A set-aside asset whose live name is missing is the only copy left, so
        it is renamed back instead of deleted.
        """
        touched = False
        for name, existing in sorted(current.assets.items()):
            if STAGING_MARKER in name:
                self._delete_asset(existing.asset_id)
            elif OLD_MARKER in name:
                live = name.split(OLD_MARKER, 1)[0]
                if live in current.assets:
                    self._delete_asset(existing.asset_id)
                else:
                    self._rename_asset(existing.asset_id, live)
            else:
                continue
            touched = True
        return touched

    def upsert_assets(self, record: ReleaseRecord, assets: Sequence[UploadAsset]) -> ReleaseRecord:
        """Replace same-named assets; all-or-nothing from a reader's view.

        Every asset is first uploaded under a staging name. Then, in the order
        given, the old asset is renamed aside and the staged one renamed into
        place. Any failure rolls the swapped names back and drops the staged
        uploads; old assets are only deleted once the whole set is live.
        """
        current = self._get_release(record.release_id)
        if self._clear_leftovers(current):
            current = self._get_release(record.release_id)

        staged: List[ReleaseAsset] = []
        try:
            for a in assets:
                staged.append(self._upload(current.release_id, _staging_name(a), a))
        except Exception:
            for s in staged:
                self._quiet(f"remove staged asset {s.name}", self._delete_asset, s.asset_id)
            raise

        # (live name, staged asset, set-aside old asset or None)
        swapped: List[Tuple[str, ReleaseAsset, Optional[ReleaseAsset]]] = []
        try:
            for a, s in zip(assets, staged):
                old = current.assets.get(a.name)
                if old is not None:
                    self._rename_asset(old.asset_id, f"{a.name}{OLD_MARKER}{old.asset_id}")
                swapped.append((a.name, s, old))
                self._rename_asset(s.asset_id, a.name)
        except Exception:
            for name, s, old in reversed(swapped):
                self._quiet(f"remove staged asset {s.name}", self._delete_asset, s.asset_id)
                if old is not None:
                    self._quiet(f"restore asset {name}", self._rename_asset, old.asset_id, name)
            for s in staged[len(swapped):]:
                self._quiet(f"remove staged asset {s.name}", self._delete_asset, s.asset_id)
            raise

        for name, _s, old in swapped:
            if old is not None:
                # The new set is live; a leftover here is cleared on the next upsert.
                self._quiet(f"delete replaced asset {name}", self._delete_asset, old.asset_id)

        return self._get_release(current.release_id)

    def read_asset(self, tag: str, name: str) -> bytes:
        rec = self.find_release(tag)
        if rec is None or name not in rec.assets:
            raise PermanentError(f"asset not found: {tag}/{name}")
        r = self._request(
            "GET",
            f"{self._base}/releases/assets/{rec.assets[name].asset_id}",
            ok=(200,),
            headers={"Accept": "application/octet-stream"},
        )
        return r.content

    def describe(self) -> Dict[str, str]:
        return {"class": self.__class__.__name__, "repository": self.repository}
