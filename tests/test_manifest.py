from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from _testutil import ensure_repo_on_path, write_module


class TestReadManifest(unittest.TestCase):
    def test_reads_identifier_version_and_declared_files(self) -> None:
        ensure_repo_on_path()

        from modrelease.manifest import read_manifest

        with tempfile.TemporaryDirectory() as td:
            mp = write_module(
                Path(td),
                {
                    "id": "my-module",
                    "version": "1.2.0",
                    "esmodules": ["scripts/main.js"],
                    "styles": ["./styles/main.css"],
                    "languages": [{"lang": "en", "path": "lang/en.json"}],
                    "packs": [{"name": "items", "path": "packs/items"}],
                },
            )
            m = read_manifest(mp)

        self.assertEqual(m.identifier, "my-module")
        self.assertEqual(m.version, "1.2.0")
        self.assertEqual(
            m.declared_files,
            ("module.json", "scripts/main.js", "styles/main.css", "lang/en.json", "packs/items"),
        )

    def test_legacy_name_is_identifier(self) -> None:
        ensure_repo_on_path()

        from modrelease.manifest import read_manifest

        with tempfile.TemporaryDirectory() as td:
            mp = write_module(Path(td), {"name": "old-module", "version": "0.9"})
            self.assertEqual(read_manifest(mp).identifier, "old-module")

    def test_errors(self) -> None:
        ensure_repo_on_path()

        from modrelease.errors import ManifestNotFound, ManifestParseError, ManifestSchemaError
        from modrelease.manifest import read_manifest

        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            with self.assertRaises(ManifestNotFound):
                read_manifest(root / "missing.json")

            bad = root / "bad.json"
            bad.write_text("{not json", encoding="utf-8")
            with self.assertRaises(ManifestParseError):
                read_manifest(bad)

            arr = root / "arr.json"
            arr.write_text("[1, 2]", encoding="utf-8")
            with self.assertRaises(ManifestParseError):
                read_manifest(arr)

            no_version = root / "nv.json"
            no_version.write_text(json.dumps({"id": "x"}), encoding="utf-8")
            with self.assertRaises(ManifestSchemaError):
                read_manifest(no_version)

            no_id = root / "ni.json"
            no_id.write_text(json.dumps({"version": "1.0.0"}), encoding="utf-8")
            with self.assertRaises(ManifestSchemaError):
                read_manifest(no_id)


class TestWriteVersion(unittest.TestCase):
    def test_round_trip_keeps_other_fields(self) -> None:
        ensure_repo_on_path()

        from modrelease.manifest import read_manifest, write_version

        with tempfile.TemporaryDirectory() as td:
            original = {"id": "my-module", "version": "1.0.0", "title": "My Module", "compatibility": {"minimum": "11"}}
            mp = write_module(Path(td), original)
            # Hand-written key order, not alphabetical.
            mp.write_text(json.dumps(original, indent=2) + "\n", encoding="utf-8")

            updated = write_version(read_manifest(mp), "v1.1.0")
            self.assertEqual(updated.version, "1.1.0")

            again = read_manifest(mp)
            self.assertEqual(again.version, "1.1.0")
            expected = dict(original)
            expected["version"] = "1.1.0"
            self.assertEqual(again.data, expected)

            # Key order of the source file survives the rewrite.
            self.assertEqual(list(again.data), ["id", "version", "title", "compatibility"])
            text = mp.read_text(encoding="utf-8")
            self.assertTrue(text.endswith("}\n"))
            self.assertEqual(text, json.dumps(expected, indent=2, ensure_ascii=False) + "\n")

    def test_rejects_bad_versions(self) -> None:
        ensure_repo_on_path()

        from modrelease.errors import InvalidVersion
        from modrelease.manifest import read_manifest, write_version

        with tempfile.TemporaryDirectory() as td:
            mp = write_module(Path(td))
            m = read_manifest(mp)
            for bad in ("", "v", "latest", "1..2", "1.0.0 beta"):
                with self.assertRaises(InvalidVersion, msg=bad):
                    write_version(m, bad)
            # File untouched.
            self.assertEqual(read_manifest(mp).version, "1.0.0")


class TestExtractVersionFromTag(unittest.TestCase):
    def test_strips_prefix_and_matches_manifest(self) -> None:
        ensure_repo_on_path()

        from modrelease.manifest import extract_version_from_tag, read_manifest

        with tempfile.TemporaryDirectory() as td:
            mp = write_module(Path(td), {"id": "my-module", "version": "1.2.0"})
            self.assertEqual(extract_version_from_tag("v1.2.0"), read_manifest(mp).version)

        self.assertEqual(extract_version_from_tag("refs/tags/v2.0.0-rc.1"), "2.0.0-rc.1")
        self.assertEqual(extract_version_from_tag("release-3.1", prefix="release-"), "3.1")

    def test_invalid_tags(self) -> None:
        ensure_repo_on_path()

        from modrelease.errors import InvalidTag
        from modrelease.manifest import extract_version_from_tag

        for bad in ("1.2.0", "vnext", "v", ""):
            with self.assertRaises(InvalidTag, msg=bad):
                extract_version_from_tag(bad)


class TestInjectReleaseUrls(unittest.TestCase):
    def test_sets_manifest_and_download(self) -> None:
        ensure_repo_on_path()

        from modrelease.errors import ManifestSchemaError
        from modrelease.manifest import inject_release_urls, read_manifest

        with tempfile.TemporaryDirectory() as td:
            mp = write_module(Path(td))
            m = inject_release_urls(read_manifest(mp), repository="me/my-module", archive_name="module.zip", tag="v1.0.0")

            self.assertEqual(m.data["manifest"], "https://github.com/me/my-module/releases/latest/download/module.json")
            self.assertEqual(m.data["download"], "https://github.com/me/my-module/releases/download/v1.0.0/module.zip")
            self.assertEqual(read_manifest(mp).data["download"], m.data["download"])

            with self.assertRaises(ManifestSchemaError):
                inject_release_urls(m, repository="not-a-repo", archive_name="module.zip", tag="v1.0.0")


if __name__ == "__main__":
    unittest.main()
