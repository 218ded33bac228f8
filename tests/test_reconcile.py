from __future__ import annotations

import tempfile
import threading
import time
import unittest
from pathlib import Path

from _testutil import ensure_repo_on_path, write_module


def _no_sleep(_s: float) -> None:
    return None


class ReconcileTestBase(unittest.TestCase):
    def setUp(self) -> None:
        ensure_repo_on_path()

        from modrelease.artifacts.packaging import bundle
        from modrelease.manifest import read_manifest

        self._td = tempfile.TemporaryDirectory()
        self.root = Path(self._td.name)
        mp = write_module(self.root, {"id": "my-module", "version": "1.0.0"}, {"my-module.js": "export {};\n"})
        self.manifest = read_manifest(mp)
        self.bundle = bundle(self.manifest, ["module.json", "my-module.js"], self.root)

    def tearDown(self) -> None:
        self._td.cleanup()

    def options(self, **kw):
        from modrelease.orchestration.reconcile import ReconcileOptions
        from modrelease.orchestration.retry import RetryPolicy

        kw.setdefault("retry", RetryPolicy(attempts=2, backoff_s=0.0, max_backoff_s=0.0))
        kw.setdefault("max_workers", 1)
        return ReconcileOptions(**kw)

    def run_reconcile(self, channels, store, *, stable=True, **opts):
        from modrelease.orchestration.reconcile import ReconcilePolicy, reconcile

        return reconcile(
            channels,
            self.bundle,
            self.manifest,
            ReconcilePolicy(stable=stable),
            store=store,
            options=self.options(**opts),
            sleep=_no_sleep,
        )


class TestReconcileEndToEnd(ReconcileTestBase):
    def test_create_then_update_is_byte_identical(self) -> None:
        from modrelease.models import ReleaseChannel
        from modrelease.stores.memory import InMemoryReleaseStore

        store = InMemoryReleaseStore()
        [r1] = self.run_reconcile([ReleaseChannel.versioned("1.0.0")], store)
        self.assertEqual(r1.state, "created")
        self.assertEqual(set(r1.assets), {"module.json", "module.zip"})
        zip1 = store.read_asset("1.0.0", "module.zip")
        man1 = store.read_asset("1.0.0", "module.json")

        [r2] = self.run_reconcile([ReleaseChannel.versioned("1.0.0")], store)
        self.assertEqual(r2.state, "updated")
        self.assertEqual(set(r2.assets), {"module.json", "module.zip"})
        self.assertEqual(store.read_asset("1.0.0", "module.zip"), zip1)
        self.assertEqual(store.read_asset("1.0.0", "module.json"), man1)
        self.assertEqual(man1, (self.root / "module.json").read_bytes())

        # Unchanged digests: the second run did not upload again.
        upserts = [c for c in store.calls if c[0] == "upsert"]
        self.assertEqual(len(upserts), 1)

    def test_release_named_from_template(self) -> None:
        from modrelease.models import ReleaseChannel
        from modrelease.stores.memory import InMemoryReleaseStore

        store = InMemoryReleaseStore()
        self.run_reconcile([ReleaseChannel.versioned("v1.0.0")], store, release_name="{identifier} v{version}", prerelease=True)
        rec = store.find_release("v1.0.0")
        self.assertIsNotNone(rec)
        self.assertEqual(rec.name, "my-module v1.0.0")
        self.assertTrue(rec.prerelease)


class TestReconcilePolicy(ReconcileTestBase):
    def test_latest_skipped_when_not_stable(self) -> None:
        from modrelease.models import ReleaseAsset, ReleaseChannel, ReleaseRecord
        from modrelease.stores.memory import InMemoryReleaseStore

        store = InMemoryReleaseStore()
        existing = ReleaseRecord(
            tag="latest",
            name="old",
            assets={"module.zip": ReleaseAsset(name="module.zip", size=3, sha256="x")},
            release_id="9",
        )
        store.put_record(existing, {"module.zip": b"old"})

        [r] = self.run_reconcile([ReleaseChannel.latest()], store, stable=False)
        self.assertEqual(r.state, "skipped")
        self.assertTrue(r.ok)
        self.assertEqual(store.find_release("latest"), existing)
        self.assertEqual(store.read_asset("latest", "module.zip"), b"old")
        # Nothing but the verification lookup above touched the store.
        self.assertEqual(store.calls, [("find", "latest")])

    def test_latest_updated_when_stable(self) -> None:
        from modrelease.models import ReleaseChannel
        from modrelease.stores.memory import InMemoryReleaseStore

        store = InMemoryReleaseStore()
        store.create_release("latest", "my-module latest")
        [r] = self.run_reconcile([ReleaseChannel.latest()], store, stable=True)
        self.assertEqual(r.state, "updated")
        self.assertEqual(set(r.assets), {"module.json", "module.zip"})

    def test_versioned_ignores_stable_flag(self) -> None:
        from modrelease.models import ReleaseChannel
        from modrelease.stores.memory import InMemoryReleaseStore

        store = InMemoryReleaseStore()
        [r] = self.run_reconcile([ReleaseChannel.versioned("v1.0.0")], store, stable=False)
        self.assertEqual(r.state, "created")

    def test_tag_version_mismatch_is_policy_error_for_that_channel_only(self) -> None:
        from modrelease.models import ReleaseChannel
        from modrelease.stores.memory import InMemoryReleaseStore

        store = InMemoryReleaseStore()
        results = self.run_reconcile(
            [ReleaseChannel.versioned("v2.0.0"), ReleaseChannel.versioned("nightly"), ReleaseChannel.versioned("v1.0.0")],
            store,
        )
        self.assertEqual([r.state for r in results], ["error", "error", "created"])
        self.assertEqual([r.error_kind for r in results], ["policy", "policy", ""])
        self.assertIsNone(store.find_release("v2.0.0"))

    def test_allow_updates_false_reports_release_exists(self) -> None:
        from modrelease.models import ReleaseChannel
        from modrelease.stores.memory import InMemoryReleaseStore

        store = InMemoryReleaseStore()
        store.create_release("1.0.0", "existing")
        [r] = self.run_reconcile([ReleaseChannel.versioned("1.0.0")], store, allow_updates=False)
        self.assertEqual(r.state, "error")
        self.assertEqual(r.error_kind, "channel")
        self.assertIn("already exists", r.error)

        # A fresh release is still created when updates are disallowed.
        [r2] = self.run_reconcile([ReleaseChannel.versioned("v1.0.0")], store, allow_updates=False)
        self.assertEqual(r2.state, "created")

    def test_duplicate_channels_reconciled_once(self) -> None:
        from modrelease.models import ReleaseChannel
        from modrelease.stores.memory import InMemoryReleaseStore

        store = InMemoryReleaseStore()
        results = self.run_reconcile([ReleaseChannel.versioned("1.0.0"), ReleaseChannel.versioned("1.0.0")], store)
        self.assertEqual(len(results), 1)


class TestReconcilePartialFailure(ReconcileTestBase):
    def test_one_channel_fails_other_completes(self) -> None:
        from modrelease.errors import RetryableError
        from modrelease.models import ReleaseChannel
        from modrelease.stores.memory import InMemoryReleaseStore

        def hook(op: str, tag: str) -> None:
            if tag == "1.0.0" and op == "upsert":
                raise RetryableError("connection reset by peer")

        store = InMemoryReleaseStore(fail_hook=hook)
        store.create_release("latest", "latest")

        results = self.run_reconcile([ReleaseChannel.latest(), ReleaseChannel.versioned("1.0.0")], store, max_workers=4)
        self.assertEqual([r.state for r in results], ["updated", "error"])
        self.assertEqual(results[1].error_kind, "channel")
        self.assertEqual(results[1].attempts, 2)
        self.assertIn("connection reset", results[1].error)

        # The failed channel has a release but none of the new assets.
        rec = store.find_release("1.0.0")
        self.assertIsNotNone(rec)
        self.assertEqual(rec.assets, {})
        self.assertEqual(set(store.find_release("latest").assets), {"module.json", "module.zip"})

    def test_transient_failure_recovers_and_keeps_created_state(self) -> None:
        from modrelease.errors import RetryableError
        from modrelease.models import ReleaseChannel
        from modrelease.stores.memory import InMemoryReleaseStore

        failures = {"upsert": 1}

        def hook(op: str, tag: str) -> None:
            if failures.get(op, 0) > 0:
                failures[op] -= 1
                raise RetryableError("HTTP 503")

        store = InMemoryReleaseStore(fail_hook=hook)
        [r] = self.run_reconcile([ReleaseChannel.versioned("1.0.0")], store)
        self.assertEqual(r.state, "created")
        self.assertEqual(r.attempts, 2)

    def test_unexpected_exception_stays_in_channel(self) -> None:
        from modrelease.models import ReleaseChannel
        from modrelease.stores.memory import InMemoryReleaseStore

        def hook(op: str, tag: str) -> None:
            if tag == "v1.0.0":
                raise ValueError("adapter bug")

        store = InMemoryReleaseStore(fail_hook=hook)
        results = self.run_reconcile([ReleaseChannel.versioned("v1.0.0"), ReleaseChannel.versioned("1.0.0")], store)
        self.assertEqual([r.state for r in results], ["error", "created"])
        self.assertIn("ValueError", results[0].error)
        self.assertEqual(results[0].attempts, 1)


class TestReconcileDeadline(ReconcileTestBase):
    def test_hung_channel_reported_as_timeout(self) -> None:
        from modrelease.models import ReleaseChannel
        from modrelease.stores.memory import InMemoryReleaseStore

        release = threading.Event()

        def hook(op: str, tag: str) -> None:
            if tag == "1.0.0":
                release.wait(5.0)

        store = InMemoryReleaseStore(fail_hook=hook)
        store.create_release("latest", "latest")
        try:
            started = time.monotonic()
            results = self.run_reconcile(
                [ReleaseChannel.versioned("1.0.0"), ReleaseChannel.latest()],
                store,
                max_workers=2,
                deadline_s=0.3,
            )
            elapsed = time.monotonic() - started
        finally:
            release.set()

        self.assertEqual([r.state for r in results], ["timeout", "updated"])
        self.assertEqual(results[0].error_kind, "timeout")
        self.assertLess(elapsed, 4.0)

    def test_retry_loop_honours_deadline(self) -> None:
        from modrelease.errors import RetryableError
        from modrelease.models import ReleaseChannel
        from modrelease.orchestration.reconcile import ReconcileOptions, ReconcilePolicy, reconcile
        from modrelease.orchestration.retry import RetryPolicy
        from modrelease.stores.memory import InMemoryReleaseStore

        now = [0.0]

        def sleep(s: float) -> None:
            now[0] += s

        def hook(op: str, tag: str) -> None:
            raise RetryableError("HTTP 429")

        store = InMemoryReleaseStore(fail_hook=hook)
        [r] = reconcile(
            [ReleaseChannel.versioned("1.0.0")],
            self.bundle,
            self.manifest,
            ReconcilePolicy(stable=True),
            store=store,
            options=ReconcileOptions(retry=RetryPolicy(attempts=10, backoff_s=4.0, max_backoff_s=4.0), deadline_s=10.0, max_workers=1),
            sleep=sleep,
            clock=lambda: now[0],
        )
        self.assertEqual(r.state, "timeout")
        self.assertEqual(r.attempts, 3)

    def test_no_upload_once_deadline_passed(self) -> None:
        from modrelease.models import ReleaseChannel
        from modrelease.orchestration.reconcile import ReconcileOptions, ReconcilePolicy, reconcile
        from modrelease.stores.memory import InMemoryReleaseStore

        now = [0.0]

        def hook(op: str, tag: str) -> None:
            # Creating the release is slow enough to use up the whole budget.
            if op == "create":
                now[0] = 30.0

        store = InMemoryReleaseStore(fail_hook=hook)
        [r] = reconcile(
            [ReleaseChannel.versioned("1.0.0")],
            self.bundle,
            self.manifest,
            ReconcilePolicy(stable=True),
            store=store,
            options=ReconcileOptions(deadline_s=10.0, max_workers=1),
            sleep=_no_sleep,
            clock=lambda: now[0],
        )
        self.assertEqual(r.state, "timeout")
        self.assertEqual([c[0] for c in store.calls], ["find", "create"])
        self.assertEqual(store.find_release("1.0.0").assets, {})

    def test_assets_go_live_archive_first(self) -> None:
        from modrelease.orchestration.reconcile import release_assets

        names = [a.name for a in release_assets(self.bundle, self.manifest, "module.zip")]
        self.assertEqual(names, ["module.zip", "module.json"])


if __name__ == "__main__":
    unittest.main()
