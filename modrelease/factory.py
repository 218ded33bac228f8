from __future__ import annotations

from pathlib import Path
from typing import Optional

from .config import ALLOWED_STORE_KINDS, StoreSpec
from .contracts import ReleaseStore
from .errors import ConfigError
from .github.releases import DEFAULT_API_URL, DEFAULT_UPLOADS_URL, GitHubReleaseStore, repository_from_env, token_from_env
from .stores.local_dir import LocalDirReleaseStore
from .stores.memory import InMemoryReleaseStore

DEFAULT_LOCAL_DIR = ".releases"


def build_store(spec: StoreSpec, *, root: Path, repository: str = "") -> ReleaseStore:
    """Instantiate the release store named by ``spec.kind``."""
    kind = str(spec.kind or "").strip()
    if kind not in ALLOWED_STORE_KINDS:
        raise ConfigError(f"unknown release store kind {kind!r}; allowed={list(ALLOWED_STORE_KINDS)}")
    settings = dict(spec.settings or {})

    if kind == "memory":
        return InMemoryReleaseStore()

    if kind == "local_dir":
        base = Path(str(settings.get("base_dir") or DEFAULT_LOCAL_DIR)).expanduser()
        if not base.is_absolute():
            base = root / base
        return LocalDirReleaseStore(base_dir=base.resolve())

    repo = str(settings.get("repository") or repository or repository_from_env()).strip()
    if not repo or "/" not in repo:
        raise ConfigError("GitHub release store needs a repository (owner/name) via config, --repository or GITHUB_REPOSITORY")
    token_env_var = str(settings.get("token_env_var") or "GITHUB_TOKEN")
    token = token_from_env(token_env_var)
    if not token:
        raise ConfigError(f"Missing GitHub token in env var {token_env_var} (or GH_TOKEN). Required for release publishing.")

    timeout_s: Optional[float] = settings.get("timeout_s")
    return GitHubReleaseStore(
        repository=repo,
        token=token,
        api_url=str(settings.get("api_url") or DEFAULT_API_URL),
        uploads_url=str(settings.get("uploads_url") or DEFAULT_UPLOADS_URL),
        timeout_s=float(timeout_s) if timeout_s is not None else 30.0,
    )
