from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import jsonschema
import yaml

from .errors import ConfigError
from .models import DEFAULT_LATEST_TAG
from .orchestration.reconcile import DEFAULT_RELEASE_NAME, ReconcileOptions
from .orchestration.retry import RetryPolicy
from .utils.yamlio import read_yaml

DEFAULT_CONFIG_NAME = "release.yml"
CONFIG_ENV_VAR = "MODRELEASE_CONFIG"

# Store kinds are strict. Any unknown kind is rejected.
ALLOWED_STORE_KINDS: Tuple[str, ...] = ("github", "local_dir", "memory")


@dataclass(frozen=True)
class StoreSpec:
    kind: str = "github"
    settings: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ReleaseConfig:
    manifest_path: str = "module.json"
    declared_files: Tuple[str, ...] = ()
    output_archive_name: str = "module.zip"
    dist_dir: str = "dist"
    tag_prefix: str = "v"
    latest_tag: str = DEFAULT_LATEST_TAG
    inject_urls: bool = False
    repository: str = ""
    release_name: str = DEFAULT_RELEASE_NAME
    draft: bool = False
    prerelease: bool = False
    allow_updates: bool = True
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    deadline_s: Optional[float] = None
    max_workers: int = 4
    store: StoreSpec = field(default_factory=StoreSpec)
    source_path: Optional[Path] = None

    def reconcile_options(self) -> ReconcileOptions:
        return ReconcileOptions(
            archive_name=self.output_archive_name,
            allow_updates=self.allow_updates,
            draft=self.draft,
            prerelease=self.prerelease,
            release_name=self.release_name,
            tag_prefix=self.tag_prefix,
            retry=self.retry,
            deadline_s=self.deadline_s,
            max_workers=self.max_workers,
        )


def _config_schema() -> Dict[str, Any]:
    return {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "type": "object",
        "properties": {
            "manifest_path": {"type": "string", "minLength": 1},
            "declared_files": {"type": "array", "items": {"type": "string", "minLength": 1}},
            "output_archive_name": {"type": "string", "pattern": r"^[A-Za-z0-9][A-Za-z0-9._+-]*$"},
            "dist_dir": {"type": "string", "minLength": 1},
            "tag_prefix": {"type": "string"},
            "latest_tag": {"type": "string", "minLength": 1},
            "inject_urls": {"type": "boolean"},
            "repository": {"type": "string", "pattern": r"^([A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+)?$"},
            "release": {
                "type": "object",
                "properties": {
                    "name": {"type": "string", "minLength": 1},
                    "draft": {"type": "boolean"},
                    "prerelease": {"type": "boolean"},
                    "allow_updates": {"type": "boolean"},
                },
                "additionalProperties": False,
            },
            "retry": {
                "type": "object",
                "properties": {
                    "attempts": {"type": "integer", "minimum": 1},
                    "backoff_s": {"type": "number", "minimum": 0},
                    "max_backoff_s": {"type": "number", "minimum": 0},
                },
                "additionalProperties": False,
            },
            "deadline_s": {"type": ["number", "null"], "exclusiveMinimum": 0},
            "max_workers": {"type": "integer", "minimum": 1},
            "store": {
                "type": "object",
                "required": ["kind"],
                "properties": {
                    "kind": {"type": "string", "enum": list(ALLOWED_STORE_KINDS)},
                    "settings": {"type": "object"},
                },
                "additionalProperties": False,
            },
        },
        "additionalProperties": False,
    }


def resolve_config_path(root: Path, cli_path: Optional[str] = None) -> Tuple[Path, bool]:
    """Resolve the release config path.

    Precedence:
      1) CLI flag --config
      2) MODRELEASE_CONFIG
      3) <root>/release.yml

    Returns the path and whether it was given explicitly.
    """
    if cli_path and str(cli_path).strip():
        return Path(str(cli_path).strip()).expanduser().resolve(), True

    env_path = str(os.environ.get(CONFIG_ENV_VAR, "") or "").strip()
    if env_path:
        return Path(env_path).expanduser().resolve(), True

    return (root / DEFAULT_CONFIG_NAME).resolve(), False


def validate_release_name(template: str) -> None:
    try:
        template.format(identifier="x", version="1.0.0", tag="v1.0.0")
    except (KeyError, IndexError, ValueError) as e:
        raise ConfigError(f"release name template {template!r} is invalid: {e}") from e


def config_from_dict(data: Dict[str, Any], source_path: Optional[Path] = None) -> ReleaseConfig:
    try:
        jsonschema.validate(instance=data, schema=_config_schema())
    except jsonschema.ValidationError as e:
        where = f" ({source_path})" if source_path is not None else ""
        raise ConfigError(f"release config schema validation failed{where}: {e.message}") from e

    release = data.get("release") or {}
    retry = data.get("retry") or {}
    store = data.get("store") or {}
    defaults = ReleaseConfig()
    default_retry = RetryPolicy()

    cfg = ReleaseConfig(
        manifest_path=str(data.get("manifest_path", defaults.manifest_path)),
        declared_files=tuple(str(x) for x in data.get("declared_files", ())),
        output_archive_name=str(data.get("output_archive_name", defaults.output_archive_name)),
        dist_dir=str(data.get("dist_dir", defaults.dist_dir)),
        tag_prefix=str(data.get("tag_prefix", defaults.tag_prefix)),
        latest_tag=str(data.get("latest_tag", defaults.latest_tag)),
        inject_urls=bool(data.get("inject_urls", defaults.inject_urls)),
        repository=str(data.get("repository", "") or ""),
        release_name=str(release.get("name", defaults.release_name)),
        draft=bool(release.get("draft", defaults.draft)),
        prerelease=bool(release.get("prerelease", defaults.prerelease)),
        allow_updates=bool(release.get("allow_updates", defaults.allow_updates)),
        retry=RetryPolicy(
            attempts=int(retry.get("attempts", default_retry.attempts)),
            backoff_s=float(retry.get("backoff_s", default_retry.backoff_s)),
            max_backoff_s=float(retry.get("max_backoff_s", default_retry.max_backoff_s)),
        ),
        deadline_s=float(data["deadline_s"]) if data.get("deadline_s") is not None else None,
        max_workers=int(data.get("max_workers", defaults.max_workers)),
        store=StoreSpec(kind=str(store.get("kind", "github")), settings=dict(store.get("settings") or {})),
        source_path=source_path,
    )
    validate_release_name(cfg.release_name)
    if cfg.output_archive_name == Path(cfg.manifest_path).name:
        raise ConfigError("output_archive_name must differ from the manifest file name")
    return cfg


def load_release_config(root: Path, cli_path: Optional[str] = None) -> ReleaseConfig:
    """Load and validate the release config.

    A missing default ``release.yml`` yields the built-in defaults; a missing
    file named explicitly (flag or env) is an error.
    """
    path, explicit = resolve_config_path(root, cli_path)
    if not path.exists():
        if explicit:
            raise ConfigError(f"release config not found: {path}")
        return ReleaseConfig()

    try:
        data = read_yaml(path)
    except yaml.YAMLError as e:
        raise ConfigError(f"release config is not valid YAML {path}: {e}") from e
    except (OSError, ValueError) as e:
        raise ConfigError(f"cannot read release config {path}: {e}") from e
    return config_from_dict(data, source_path=path)


def with_overrides(cfg: ReleaseConfig, **overrides: Any) -> ReleaseConfig:
    """Apply CLI overrides; ``None`` values leave the config value in place."""
    changes = {k: v for k, v in overrides.items() if v is not None}
    if not changes:
        return cfg
    out = replace(cfg, **changes)
    validate_release_name(out.release_name)
    if out.output_archive_name == Path(out.manifest_path).name:
        raise ConfigError("output_archive_name must differ from the manifest file name")
    return out
