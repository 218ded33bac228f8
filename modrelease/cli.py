from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .artifacts.packaging import bundle, content_digest, resolve_declared_files, write_archive
from .config import ALLOWED_STORE_KINDS, ReleaseConfig, StoreSpec, load_release_config, with_overrides
from .contracts import ReleaseStore
from .errors import BundleError, ConfigError, InvalidTag, ManifestError, ReleaseError
from .factory import build_store
from .manifest import (
    extract_version_from_tag,
    inject_release_urls,
    manifest_bytes,
    read_manifest,
    save_manifest,
    write_version,
)
from .models import ModuleManifest, ReconcileResult, ReleaseChannel
from .orchestration.reconcile import ReconcilePolicy, reconcile
from .utils.fs import atomic_write_bytes

EXIT_OK = 0
EXIT_CHANNEL_FAILED = 1
EXIT_FATAL = 2

_TAG_REF_PREFIX = "refs/tags/"


def _env_truthy(name: str) -> bool:
    v = (os.getenv(name) or "").strip().lower()
    return v in {"1", "true", "yes", "y", "on"}


def _fail(reason: str, message: str) -> int:
    print(f"[modrelease][FAIL] {message}", file=sys.stderr)
    print(json.dumps({"status": "FAILED", "reason": reason, "message": message}, sort_keys=True))
    return EXIT_FATAL


def _load_config(args: argparse.Namespace, root: Path) -> ReleaseConfig:
    cfg = load_release_config(root, cli_path=getattr(args, "config", None))
    store = None
    store_kind = getattr(args, "store", None)
    store_dir = getattr(args, "store_dir", None)
    if store_kind or store_dir:
        kind = store_kind or ("local_dir" if store_dir else cfg.store.kind)
        settings = dict(cfg.store.settings) if kind == cfg.store.kind else {}
        if store_dir:
            settings["base_dir"] = store_dir
        store = StoreSpec(kind=kind, settings=settings)
    return with_overrides(
        cfg,
        manifest_path=getattr(args, "manifest", None),
        declared_files=tuple(args.files) if getattr(args, "files", None) else None,
        output_archive_name=getattr(args, "archive_name", None),
        dist_dir=getattr(args, "dist_dir", None),
        repository=getattr(args, "repository", None),
        inject_urls=True if getattr(args, "inject_urls", False) else None,
        store=store,
    )


def parse_channels(values: Sequence[str], ref: str, cfg: ReleaseConfig) -> List[ReleaseChannel]:
    """Map --channel values and the triggering ref to release channels.

    ``latest`` selects the latest channel; anything else is a version tag. A
    ``refs/tags/<tag>`` ref adds that tag; branch refs add nothing.
    """
    out: List[ReleaseChannel] = []
    for raw in values or []:
        v = str(raw or "").strip()
        if not v:
            continue
        if v.lower() == "latest":
            out.append(ReleaseChannel.latest(cfg.latest_tag))
        elif v.startswith(_TAG_REF_PREFIX):
            out.append(ReleaseChannel.versioned(v[len(_TAG_REF_PREFIX):]))
        else:
            out.append(ReleaseChannel.versioned(v))
    r = str(ref or "").strip()
    if r.startswith(_TAG_REF_PREFIX):
        out.append(ReleaseChannel.versioned(r[len(_TAG_REF_PREFIX):]))
    return out


def _version_from_channels(channels: Sequence[ReleaseChannel], prefix: str) -> Optional[str]:
    """Single version carried by prefixed tags, or None if there is none or they disagree."""
    versions = set()
    for c in channels:
        if c.is_latest or not prefix or not c.tag.startswith(prefix):
            continue
        try:
            versions.add(extract_version_from_tag(c.tag, prefix))
        except InvalidTag:
            # Reported per channel by the reconciler.
            continue
    return versions.pop() if len(versions) == 1 else None


def _prepare_manifest(cfg: ReleaseConfig, manifest: ModuleManifest, channels: Sequence[ReleaseChannel]) -> ModuleManifest:
    """Apply the tag-derived version and release URLs in memory only."""
    tag_version = _version_from_channels(channels, cfg.tag_prefix)
    if tag_version is not None and tag_version != manifest.version:
        print(f"[modrelease][INFO] manifest version {manifest.version} -> {tag_version} (from tag)", file=sys.stderr)
        manifest = write_version(manifest, tag_version, persist=False)

    if cfg.inject_urls:
        repo = cfg.repository or str(os.environ.get("GITHUB_REPOSITORY", "") or "").strip()
        versioned = [c for c in channels if not c.is_latest]
        download_tag = versioned[0].tag if versioned else cfg.latest_tag
        manifest = inject_release_urls(
            manifest,
            repository=repo,
            archive_name=cfg.output_archive_name,
            tag=download_tag,
            latest_tag=cfg.latest_tag,
            persist=False,
        )
    return manifest


def _write_dist(cfg: ReleaseConfig, root: Path, manifest: ModuleManifest, b) -> Dict[str, Any]:
    dist = root / cfg.dist_dir
    zip_path = dist / cfg.output_archive_name
    sha, size = write_archive(b, zip_path)
    atomic_write_bytes(dist / manifest.file_name, manifest_bytes(manifest))
    return {"path": str(zip_path), "sha256": sha, "bytes": size}


def _summary(
    manifest: ModuleManifest,
    digest: str,
    archive: Dict[str, Any],
    results: Sequence[ReconcileResult],
    store: Optional[ReleaseStore] = None,
) -> Dict[str, Any]:
    if not results:
        status = "BUNDLED"
    elif all(r.ok for r in results):
        status = "COMPLETED"
    else:
        status = "PARTIAL" if any(r.ok for r in results) else "FAILED"
    return {
        "status": status,
        "identifier": manifest.identifier,
        "version": manifest.version,
        "digest": digest,
        "archive": archive,
        "results": [r.to_dict() for r in results],
        "store": store.describe() if store is not None else None,
    }


def exit_code_for(results: Sequence[ReconcileResult]) -> int:
    return EXIT_OK if all(r.ok for r in results) else EXIT_CHANNEL_FAILED


def cmd_release(args: argparse.Namespace) -> int:
    root = Path(args.root).resolve()
    try:
        cfg = _load_config(args, root)
        channels = parse_channels(args.channel or [], args.ref, cfg)
        if not channels and not args.no_publish:
            raise ConfigError("no release channel given (use --channel latest|<tag> or a refs/tags/* --ref)")
        source = read_manifest(root / cfg.manifest_path)
        manifest = _prepare_manifest(cfg, source, channels)
        # Every fatal check runs before module.json is rewritten.
        resolve_declared_files(cfg.declared_files or manifest.declared_files, root)
        store = None if args.no_publish else build_store(cfg.store, root=root, repository=cfg.repository)
        if manifest.data != source.data:
            save_manifest(manifest)
        b = bundle(manifest, cfg.declared_files, root)
        digest = content_digest(b)
        archive = _write_dist(cfg, root, manifest, b)
        if store is None:
            print(json.dumps(_summary(manifest, digest, archive, []), sort_keys=True))
            return EXIT_OK
    except ConfigError as e:
        return _fail("config_error", str(e))
    except ManifestError as e:
        return _fail("manifest_error", str(e))
    except BundleError as e:
        return _fail("bundle_error", str(e))

    policy = ReconcilePolicy(stable=bool(args.stable) or _env_truthy("RELEASE_STABLE"))
    results = reconcile(channels, b, manifest, policy, store=store, options=cfg.reconcile_options())
    for r in results:
        if not r.ok:
            print(f"[modrelease][FAIL] channel {r.tag}: {r.state} ({r.error_kind}) {r.error}", file=sys.stderr)

    print(json.dumps(_summary(manifest, digest, archive, results, store), sort_keys=True))
    return exit_code_for(results)


def cmd_bundle(args: argparse.Namespace) -> int:
    root = Path(args.root).resolve()
    try:
        cfg = _load_config(args, root)
        manifest = read_manifest(root / cfg.manifest_path)
        b = bundle(manifest, cfg.declared_files, root)
        archive = _write_dist(cfg, root, manifest, b)
    except ConfigError as e:
        return _fail("config_error", str(e))
    except ManifestError as e:
        return _fail("manifest_error", str(e))
    except BundleError as e:
        return _fail("bundle_error", str(e))

    out = _summary(manifest, content_digest(b), archive, [])
    out["entries"] = list(b.paths())
    print(json.dumps(out, sort_keys=True))
    return EXIT_OK


def cmd_version(args: argparse.Namespace) -> int:
    root = Path(args.root).resolve()
    try:
        cfg = _load_config(args, root)
        manifest = read_manifest(root / cfg.manifest_path)
        prefix = cfg.tag_prefix if args.prefix is None else args.prefix
        version = extract_version_from_tag(args.tag, prefix)
        manifest = write_version(manifest, version)
    except ConfigError as e:
        return _fail("config_error", str(e))
    except ManifestError as e:
        return _fail("manifest_error", str(e))
    except InvalidTag as e:
        return _fail("invalid_tag", str(e))
    print(json.dumps({"identifier": manifest.identifier, "version": manifest.version}, sort_keys=True))
    return EXIT_OK


def _add_common(sp: argparse.ArgumentParser) -> None:
    sp.add_argument("--config", default=None, help="Release config YAML (default: $MODRELEASE_CONFIG or <root>/release.yml)")
    sp.add_argument("--root", default=".", help="Module working directory")
    sp.add_argument("--manifest", default=None, help="Manifest path relative to --root")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="modrelease")
    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("release", help="Bundle the module and reconcile release channels")
    _add_common(sp)
    sp.add_argument("--files", nargs="+", default=None, help="Declared files/globs (prefix with ? for optional)")
    sp.add_argument("--channel", action="append", default=None, help="latest or a version tag; repeatable")
    sp.add_argument("--ref", default=os.environ.get("GITHUB_REF", ""), help="Triggering git ref (default: $GITHUB_REF)")
    sp.add_argument("--stable", action="store_true", help="Ref is the stable branch; enables the latest channel")
    sp.add_argument("--archive-name", default=None)
    sp.add_argument("--dist-dir", default=None)
    sp.add_argument("--store", choices=list(ALLOWED_STORE_KINDS), default=None)
    sp.add_argument("--store-dir", default=None, help="Base directory for the local_dir store")
    sp.add_argument("--repository", default=None, help="owner/name (default: $GITHUB_REPOSITORY)")
    sp.add_argument("--inject-urls", action="store_true", help="Write manifest/download URLs into the manifest")
    sp.add_argument("--no-publish", action="store_true", help="Bundle only; do not touch any release")
    sp.set_defaults(func=cmd_release)

    sp = sub.add_parser("bundle", help="Build the archive only and print its digest")
    _add_common(sp)
    sp.add_argument("--files", nargs="+", default=None)
    sp.add_argument("--archive-name", default=None)
    sp.add_argument("--dist-dir", default=None)
    sp.set_defaults(func=cmd_bundle)

    sp = sub.add_parser("version", help="Write the version carried by a tag into the manifest")
    _add_common(sp)
    sp.add_argument("--tag", required=True)
    sp.add_argument("--prefix", default=None, help="Tag prefix (default from config, 'v')")
    sp.set_defaults(func=cmd_version)

    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return int(args.func(args) or 0)
    except ReleaseError as e:
        return _fail("release_error", str(e))


if __name__ == "__main__":
    raise SystemExit(main())
