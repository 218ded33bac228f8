from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Tuple

# Canonical channel kinds and result states. Single source of truth for CLI output and tests.
# A channel with no release record yet is "absent"; that is observed, never reported.
ChannelKind = Literal["latest", "versioned"]
CHANNEL_KIND_VALUES: Tuple[str, ...] = ("latest", "versioned")

ChannelState = Literal["created", "updated", "skipped", "error", "timeout"]
CHANNEL_STATE_VALUES: Tuple[str, ...] = ("created", "updated", "skipped", "error", "timeout")
OK_STATES: Tuple[str, ...] = ("created", "updated", "skipped")

DEFAULT_LATEST_TAG = "latest"


def is_valid_channel_kind(value: Any) -> bool:
    return str(value or "").strip() in CHANNEL_KIND_VALUES


def is_valid_channel_state(value: Any) -> bool:
    return str(value or "").strip() in CHANNEL_STATE_VALUES


@dataclass(frozen=True)
class ModuleManifest:
    """Parsed module descriptor (module.json).

    ``data`` keeps the full mapping so writes preserve unrelated fields.
    """

    identifier: str
    version: str
    declared_files: Tuple[str, ...] = ()
    path: Optional[Path] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def file_name(self) -> str:
        return self.path.name if self.path is not None else "module.json"


@dataclass(frozen=True)
class BundleEntry:
    path: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class ArtifactBundle:
    """Resolved file set, sorted by relative path."""

    entries: Tuple[BundleEntry, ...]
    produced_version: str
    identifier: str = ""

    def paths(self) -> Tuple[str, ...]:
        return tuple(e.path for e in self.entries)


@dataclass(frozen=True)
class ReleaseChannel:
    kind: ChannelKind
    tag: str

    def __post_init__(self) -> None:
        if not is_valid_channel_kind(self.kind):
            raise ValueError(f"invalid channel kind={self.kind!r} (allowed: {list(CHANNEL_KIND_VALUES)})")

    @classmethod
    def latest(cls, tag: str = DEFAULT_LATEST_TAG) -> "ReleaseChannel":
        return cls(kind="latest", tag=tag)

    @classmethod
    def versioned(cls, tag: str) -> "ReleaseChannel":
        return cls(kind="versioned", tag=tag)

    @property
    def is_latest(self) -> bool:
        return self.kind == "latest"

    def __str__(self) -> str:
        return self.tag if not self.is_latest else f"latest({self.tag})"


@dataclass(frozen=True)
class ReleaseAsset:
    name: str
    size: int = 0
    sha256: str = ""
    asset_id: str = ""


@dataclass(frozen=True)
class ReleaseRecord:
    """Remote release as seen by the engine. Owned by the release store."""

    tag: str
    name: str
    assets: Dict[str, ReleaseAsset] = field(default_factory=dict)
    draft: bool = False
    prerelease: bool = False
    release_id: str = ""
    html_url: str = ""

    def asset_names(self) -> Tuple[str, ...]:
        return tuple(sorted(self.assets))


@dataclass(frozen=True)
class UploadAsset:
    name: str
    data: bytes
    content_type: str = "application/octet-stream"


@dataclass(frozen=True)
class ReconcileResult:
    channel: ReleaseChannel
    tag: str
    state: ChannelState
    # One of "", "channel", "policy", "timeout".
    error_kind: str = ""
    error: str = ""
    assets: Tuple[str, ...] = ()
    attempts: int = 0

    def __post_init__(self) -> None:
        if not is_valid_channel_state(self.state):
            raise ValueError(f"invalid channel state={self.state!r} (allowed: {list(CHANNEL_STATE_VALUES)})")

    @property
    def ok(self) -> bool:
        return self.state in OK_STATES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel.kind,
            "tag": self.tag,
            "state": self.state,
            "error_kind": self.error_kind,
            "error": self.error,
            "assets": list(self.assets),
            "attempts": self.attempts,
        }
