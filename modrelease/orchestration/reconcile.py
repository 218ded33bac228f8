"""Release reconciliation.

Each channel is reconciled on its own: resolve the tag, look up the existing
release, create it when absent, then replace its assets with the freshly
built archive and manifest. A failure on one channel never blocks or rolls
back another; callers get one ``ReconcileResult`` per channel, in input order.

Per-channel states:
  absent  -> created   no release existed for the tag
  created -> updated   a release existed and its assets were replaced
  (any)   -> skipped   latest channel while the stable policy is false
  (any)   -> error     policy or remote failure (see ``error_kind``)
  (any)   -> timeout   the overall deadline passed first

A channel still running at the deadline is reported as timed out and left to
finish in its worker thread. It starts no new attempt and no asset upload past
the deadline, but a store call already in flight may still complete.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from ..artifacts.checksums import sha256_bytes
from ..artifacts.packaging import archive_bytes
from ..contracts import ReleaseStore
from ..errors import ChannelError, DeadlineExceeded, InvalidTag, PolicyError, ReleaseExists
from ..manifest import extract_version_from_tag, is_valid_version, manifest_bytes
from ..models import ArtifactBundle, ModuleManifest, ReconcileResult, ReleaseChannel, ReleaseRecord, UploadAsset
from .retry import RetryPolicy, RetryStats, with_retry

DEFAULT_RELEASE_NAME = "{identifier} {version}"


@dataclass(frozen=True)
class ReconcilePolicy:
    # True when the triggering ref is the designated stable branch.
    stable: bool = False


@dataclass(frozen=True)
class ReconcileOptions:
    archive_name: str = "module.zip"
    allow_updates: bool = True
    draft: bool = False
    prerelease: bool = False
    release_name: str = DEFAULT_RELEASE_NAME
    tag_prefix: str = "v"
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    deadline_s: Optional[float] = None
    max_workers: int = 4


def release_assets(bundle: ArtifactBundle, manifest: ModuleManifest, archive_name: str) -> List[UploadAsset]:
    """Assets uploaded to every channel, in swap order.

    The archive goes live before the manifest that points at it.
    """
    return [
        UploadAsset(name=archive_name, data=archive_bytes(bundle), content_type="application/zip"),
        UploadAsset(name=manifest.file_name, data=manifest_bytes(manifest), content_type="application/json"),
    ]


def channel_version(channel: ReleaseChannel, manifest: ModuleManifest, tag_prefix: str = "v") -> str:
    """Version a versioned channel publishes. Must match the manifest.

    The tag is either a bare version ("1.2.0") or carries ``tag_prefix`` ("v1.2.0").
    """
    tag = str(channel.tag or "").strip()
    if not tag:
        raise InvalidTag("versioned channel tag must not be empty")
    if tag_prefix and tag.startswith(tag_prefix):
        version = extract_version_from_tag(tag, tag_prefix)
    elif is_valid_version(tag):
        version = tag
    else:
        raise InvalidTag(f"tag {tag!r} is neither a version nor prefixed with {tag_prefix!r}")
    if version != manifest.version:
        raise PolicyError(f"tag {tag!r} carries version {version!r} but manifest version is {manifest.version!r}")
    return version


def _dedupe(channels: Iterable[ReleaseChannel]) -> List[ReleaseChannel]:
    seen = set()
    out: List[ReleaseChannel] = []
    for c in channels:
        if c.tag in seen:
            continue
        seen.add(c.tag)
        out.append(c)
    return out


def _assets_current(record: ReleaseRecord, digests: Dict[str, str]) -> bool:
    for name, digest in digests.items():
        existing = record.assets.get(name)
        if existing is None or not existing.sha256 or existing.sha256 != digest:
            return False
    return True


@dataclass
class _Context:
    manifest: ModuleManifest
    policy: ReconcilePolicy
    store: ReleaseStore
    options: ReconcileOptions
    assets: Sequence[UploadAsset]
    digests: Dict[str, str]
    deadline: Optional[float]
    sleep: Callable[[float], None]
    clock: Callable[[], float]


def _reconcile_channel(channel: ReleaseChannel, ctx: _Context) -> ReconcileResult:
    tag = channel.tag
    if channel.is_latest and not ctx.policy.stable:
        return ReconcileResult(channel=channel, tag=tag, state="skipped")

    try:
        version = ctx.manifest.version if channel.is_latest else channel_version(channel, ctx.manifest, ctx.options.tag_prefix)
        if not str(tag or "").strip():
            raise InvalidTag("latest channel tag must not be empty")
        name = ctx.options.release_name.format(identifier=ctx.manifest.identifier, version=version, tag=tag)
    except PolicyError as e:
        return ReconcileResult(channel=channel, tag=tag, state="error", error_kind="policy", error=str(e))

    created = False
    stats = RetryStats()

    def attempt() -> ReleaseRecord:
        nonlocal created
        rec = ctx.store.find_release(tag)
        if rec is None:
            rec = ctx.store.create_release(tag, name, draft=ctx.options.draft, prerelease=ctx.options.prerelease)
            created = True
        elif not created and not ctx.options.allow_updates:
            raise ReleaseExists(f"release {tag!r} already exists and updates are not allowed")
        if _assets_current(rec, ctx.digests):
            return rec
        if ctx.deadline is not None and ctx.clock() >= ctx.deadline:
            # A channel the pool already reported as timed out must not upload late.
            raise DeadlineExceeded(f"channel {tag}: deadline passed before asset upload")
        return ctx.store.upsert_assets(rec, ctx.assets)

    try:
        rec = with_retry(
            attempt,
            policy=ctx.options.retry,
            deadline=ctx.deadline,
            label=f"channel {tag}",
            stats=stats,
            sleep=ctx.sleep,
            clock=ctx.clock,
        )
    except DeadlineExceeded as e:
        return ReconcileResult(channel=channel, tag=tag, state="timeout", error_kind="timeout", error=str(e), attempts=stats.attempts)
    except ChannelError as e:
        return ReconcileResult(channel=channel, tag=tag, state="error", error_kind="channel", error=str(e), attempts=stats.attempts)
    except Exception as e:
        # Adapter bugs or unexpected client errors stay confined to this channel.
        return ReconcileResult(
            channel=channel,
            tag=tag,
            state="error",
            error_kind="channel",
            error=f"{e.__class__.__name__}: {e}",
            attempts=stats.attempts,
        )

    return ReconcileResult(
        channel=channel,
        tag=tag,
        state="created" if created else "updated",
        assets=rec.asset_names(),
        attempts=stats.attempts,
    )


def reconcile(
    channels: Iterable[ReleaseChannel],
    bundle: ArtifactBundle,
    manifest: ModuleManifest,
    policy: ReconcilePolicy,
    *,
    store: ReleaseStore,
    options: Optional[ReconcileOptions] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> List[ReconcileResult]:
    """Reconcile every channel against ``store``; one result per distinct tag, in input order."""
    opts = options or ReconcileOptions()
    chans = _dedupe(channels)
    if not chans:
        return []

    assets = release_assets(bundle, manifest, opts.archive_name)
    ctx = _Context(
        manifest=manifest,
        policy=policy,
        store=store,
        options=opts,
        assets=assets,
        digests={a.name: sha256_bytes(a.data) for a in assets},
        deadline=(clock() + opts.deadline_s) if opts.deadline_s else None,
        sleep=sleep,
        clock=clock,
    )

    if opts.max_workers <= 1 or len(chans) == 1:
        return [_reconcile_channel(c, ctx) for c in chans]

    results: List[Optional[ReconcileResult]] = [None] * len(chans)
    ex = ThreadPoolExecutor(max_workers=min(opts.max_workers, len(chans)), thread_name_prefix="reconcile")
    try:
        futures = {ex.submit(_reconcile_channel, c, ctx): i for i, c in enumerate(chans)}
        timeout = None if ctx.deadline is None else max(0.0, ctx.deadline - clock())
        done, not_done = wait(futures, timeout=timeout)
        for f in done:
            results[futures[f]] = f.result()
        for f in not_done:
            f.cancel()
            i = futures[f]
            results[i] = ReconcileResult(
                channel=chans[i],
                tag=chans[i].tag,
                state="timeout",
                error_kind="timeout",
                error=f"channel {chans[i].tag}: deadline of {opts.deadline_s}s passed",
            )
    finally:
        # Do not block on stragglers past the deadline; their results are already reported.
        ex.shutdown(wait=False, cancel_futures=True)

    return [r for r in results if r is not None]
