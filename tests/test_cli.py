import gzip
import hashlib
import io
import json
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest import mock

from botocore.exceptions import ClientError

import release_sync
import s3_release


class _DummyTqdm:
    def __init__(self, *_args, **_kwargs):
        pass

    def update(self, *_args, **_kwargs):
        pass

    def close(self):
        pass


class _FakeS3Client:
    def __init__(self):
        self.objects: dict[str, bytes] = {}

    def head_object(self, Bucket: str, Key: str):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "404"}}, "HeadObject")
        return {"ContentLength": len(self.objects[Key])}

    def get_object(self, Bucket: str, Key: str):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[Key])}


class MainTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        self.dest = Path(self.tmp.name)
        self.client = _FakeS3Client()

        self._patches = [
            mock.patch.object(release_sync, "create_s3_client", return_value=self.client),
            mock.patch.object(
                release_sync, "load_s3_config_or_default", return_value=s3_release.S3Config()
            ),
            mock.patch.object(release_sync, "tqdm", _DummyTqdm),
        ]
        for patcher in self._patches:
            patcher.start()
            self.addCleanup(patcher.stop)

    def _publish(self, files: dict[str, bytes]) -> None:
        self.client.objects["game/48/manifest.json"] = json.dumps(
            {
                "files": [
                    {"path": path, "size": len(data), "hash": hashlib.sha1(data).hexdigest()}
                    for path, data in files.items()
                ]
            }
        ).encode("utf-8")
        for path, data in files.items():
            self.client.objects[f"game/48/files/{path}"] = gzip.compress(data)

    def _main(self, *argv):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = release_sync.main(
                ["releases", "game", "48", *argv, "--dest", str(self.dest), "--no-progress"]
            )
        return code, out.getvalue(), err.getvalue()

    def test_unavailable_version_exits_cleanly(self):
        code, out, _ = self._main()
        self.assertEqual(code, 0)
        self.assertIn("Version 48 available: false", out)

    def test_availability_error_is_reported(self):
        self.client.head_object = mock.Mock(
            side_effect=ClientError({"Error": {"Code": "403", "Message": "Forbidden"}}, "HeadObject")
        )
        code, out, err = self._main()
        self.assertEqual(code, 0)
        self.assertIn("ClientError", err)
        self.assertIn("Version 48 available: false", out)

    def test_broken_manifest_exits_with_error(self):
        self.client.objects["game/48/manifest.json"] = b"{"
        code, out, err = self._main()
        self.assertEqual(code, 1)
        self.assertIn("Version 48 available: true", out)
        self.assertIn("Couldn't get file info map", err)

    def test_empty_release_is_not_an_error(self):
        self._publish({})
        code, out, err = self._main()
        self.assertEqual(code, 0)
        self.assertIn("Version 48 available: true", out)
        self.assertNotIn("Couldn't get file info map", err)

    def test_syncs_release_with_filter(self):
        self._publish({"system/a.dll": b"a" * 10, "data/b.dat": b"b" * 20})
        code, out, _ = self._main("system*")
        self.assertEqual(code, 0)
        self.assertEqual((self.dest / "system" / "a.dll").read_bytes(), b"a" * 10)
        self.assertFalse((self.dest / "data").exists())

    def test_per_file_errors_keep_exit_code_zero(self):
        self._publish({"system/a.dll": b"a" * 10, "data/b.dat": b"b" * 20})
        self.client.objects["game/48/files/data/b.dat"] = b"garbage"
        code, _, err = self._main()
        self.assertEqual(code, 0)
        self.assertIn("FAIL: BadGzipFile", err)
        self.assertIn("[WARN] 1 of 2 files failed", err)
        self.assertEqual((self.dest / "system" / "a.dll").read_bytes(), b"a" * 10)


if __name__ == "__main__":
    unittest.main()
