from __future__ import annotations

import argparse
import fnmatch
import gzip
import hashlib
import os
import sys
import zlib
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from contextlib import ExitStack, closing
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, Iterable, Iterator, List, Optional

import zstandard as zstd
from botocore.exceptions import BotoCoreError, ClientError
from tqdm import tqdm

from release_manifest import (
    DEFAULT_COMPRESSION,
    DEFAULT_HASH_ALGORITHM,
    ManifestEntry,
    ManifestError,
    ReleaseManifest,
)
from s3_release import S3ReleaseSource, create_s3_client, load_s3_config_or_default

DEFAULT_WORKERS = 16
MAX_COPY_BUFFER = 1 << 24
_HASH_READ_SIZE = 4 * 1024 * 1024

# Failures confined to a single file's fetch task.
FETCH_ERRORS = (
    OSError,
    EOFError,
    zlib.error,
    zstd.ZstdError,
    BotoCoreError,
    ClientError,
)


def _describe(exc: BaseException) -> str:
    message = str(exc)
    if message:
        return f"{type(exc).__name__}: {message}"
    return type(exc).__name__


def separators_to_system(path: str) -> str:
    if os.sep == "\\":
        return path.replace("/", "\\")
    return path.replace("\\", "/")


def wildcard_match(path: str, pattern: str) -> bool:
    """Case-insensitive '*' / '?' match of a whole path; '[' is literal."""
    return fnmatch.fnmatchcase(path.lower(), pattern.lower().replace("[", "[[]"))


def file_digest(path: str, algorithm: str = DEFAULT_HASH_ALGORITHM) -> str:
    digest = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_HASH_READ_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def hash_equals(path: str, expected: str, algorithm: str = DEFAULT_HASH_ALGORITHM) -> bool:
    return file_digest(path, algorithm) == expected.lower()


def needs_update(
    entry: ManifestEntry,
    local_root: str,
    pattern: Optional[str] = None,
    hash_algorithm: str = DEFAULT_HASH_ALGORITHM,
) -> bool:
    """
    Decide whether the local copy of entry must be fetched.

    Entries outside pattern return False without being inspected. The digest
    is only computed once existence and size already match. A local file that
    cannot be inspected counts as needing an update.
    """
    file_path = separators_to_system(entry.path)
    if pattern is not None and not wildcard_match(file_path, pattern):
        return False

    local_file = os.path.join(local_root, file_path)
    try:
        if (
            os.path.isfile(local_file)
            and os.path.getsize(local_file) == entry.size
            and hash_equals(local_file, entry.hash, hash_algorithm)
        ):
            print(f"{file_path}: OK")
            return False
    except OSError as exc:
        print(f"{file_path}: couldn't check hash: {_describe(exc)}")
        return True

    print(f"{file_path}: need update")
    return True


def select_updates(
    entries: Iterable[ManifestEntry],
    local_root: str,
    pattern: Optional[str] = None,
    *,
    hash_algorithm: str = DEFAULT_HASH_ALGORITHM,
    max_workers: Optional[int] = None,
) -> List[ManifestEntry]:
    entries = list(entries)
    if not entries:
        return []

    def _check(entry: ManifestEntry) -> bool:
        return needs_update(entry, local_root, pattern, hash_algorithm)

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="inspect") as pool:
        flags = list(pool.map(_check, entries))
    return [entry for entry, flag in zip(entries, flags) if flag]


class ErrorLog:
    """Append-only error collection shared by fetch tasks."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._messages: List[str] = []

    def append(self, message: str) -> None:
        with self._lock:
            self._messages.append(message)

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            snapshot = list(self._messages)
        return iter(snapshot)


def copy_buffer_size(size: int) -> int:
    return max(1, min(size, MAX_COPY_BUFFER))


def open_decompressed(stream, compression: str = DEFAULT_COMPRESSION):
    if compression == "gzip":
        return gzip.GzipFile(fileobj=stream, mode="rb")
    if compression == "zstd":
        return zstd.ZstdDecompressor().stream_reader(
            stream, closefd=False, read_across_frames=True
        )
    raise ValueError(f"Unsupported compression: {compression}")


def _copy_stream(source, output, buffer_size: int) -> int:
    buffer = bytearray(buffer_size)
    view = memoryview(buffer)
    total = 0
    pos = 0
    while True:
        n = source.readinto(view[pos:])
        if not n:
            break
        pos += n
        if pos == buffer_size:
            output.write(view)
            total += pos
            pos = 0
    if pos:
        output.write(view[:pos])
        total += pos
    return total


def fetch_entry(
    source,
    entry: ManifestEntry,
    local_root: str,
    errors: ErrorLog,
    compression: str = DEFAULT_COMPRESSION,
) -> bool:
    """
    Download, decompress and write one file.

    Failures are recorded in errors and never raised. A failed transfer
    leaves whatever was already written in place.
    """
    file_path = separators_to_system(entry.path)
    local_file = os.path.join(local_root, file_path)

    folder = os.path.dirname(local_file)
    if folder and not os.path.isdir(folder):
        try:
            os.makedirs(folder, exist_ok=True)
        except OSError:
            errors.append(f"{file_path}: couldn't create parent dir")
            return False

    try:
        with ExitStack() as stack:
            stream = stack.enter_context(closing(source.open_stream(entry.path)))
            payload = stack.enter_context(open_decompressed(stream, compression))
            output = stack.enter_context(open(local_file, "wb"))
            _copy_stream(payload, output, copy_buffer_size(entry.size))
    except FETCH_ERRORS as exc:
        errors.append(f"{file_path}: FAIL: {_describe(exc)}")
        return False

    print(f"{file_path}: OK")
    return True


class FetchBatch:
    """
    One fetch run: a bounded worker pool plus the errors it collects.

    schedule() submits one task per entry, wait() is the completion barrier
    that flushes the errors and releases the pool.
    """

    def __init__(
        self,
        source,
        local_root: str,
        *,
        max_workers: int = DEFAULT_WORKERS,
        compression: str = DEFAULT_COMPRESSION,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.source = source
        self.local_root = local_root
        self.compression = compression
        self.errors = ErrorLog()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="fetch")

    def schedule(self, update_set: Iterable[ManifestEntry]) -> Dict[Future, ManifestEntry]:
        return {
            self._pool.submit(
                fetch_entry,
                self.source,
                entry,
                self.local_root,
                self.errors,
                self.compression,
            ): entry
            for entry in update_set
        }

    def wait(self, future_map: Dict[Future, ManifestEntry], *, progress: bool = True) -> List[str]:
        progress_bar = tqdm(total=len(future_map), unit="file", desc="files", disable=not progress)
        try:
            for future in as_completed(future_map):
                try:
                    future.result()
                except Exception as exc:
                    path = separators_to_system(future_map[future].path)
                    self.errors.append(f"{path}: FAIL: {_describe(exc)}")
                progress_bar.update(1)
        finally:
            progress_bar.close()

        errors = list(self.errors)
        for err in errors:
            print(err, file=sys.stderr)
        self.close()
        return errors

    def close(self) -> None:
        self._pool.shutdown(wait=True)

    def __enter__(self) -> FetchBatch:
        return self

    def __exit__(self, *_exc) -> None:
        self.close()


@dataclass
class SyncResult:
    checked: int
    selected: List[ManifestEntry] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def sync_release(
    source,
    local_root: str,
    pattern: Optional[str] = None,
    *,
    manifest: Optional[ReleaseManifest] = None,
    max_workers: int = DEFAULT_WORKERS,
    progress: bool = True,
) -> SyncResult:
    """
    Bring local_root in line with the release manifest of source.

    Manifest retrieval errors propagate; per-file fetch errors are returned
    in the result.
    """
    if manifest is None:
        manifest = source.get_manifest()

    to_update = select_updates(
        manifest,
        local_root,
        pattern,
        hash_algorithm=manifest.hash_algorithm,
    )

    with FetchBatch(
        source,
        local_root,
        max_workers=max_workers,
        compression=manifest.compression,
    ) as batch:
        errors = batch.wait(batch.schedule(to_update), progress=progress)

    return SyncResult(checked=len(manifest), selected=to_update, errors=errors)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="release-sync",
        description="Download the files of a release that differ from the local copy.",
        epilog='example: release-sync releases-bucket game 48 "system\\*"',
    )
    parser.add_argument("host", help="bucket holding the releases")
    parser.add_argument("product")
    parser.add_argument("version", type=int)
    parser.add_argument("filter", nargs="?", default=None, help="case-insensitive wildcard on file paths")
    parser.add_argument("--dest", default=os.getcwd(), help="local directory (default: current directory)")
    parser.add_argument("--workers", type=int, default=DEFAULT_WORKERS)
    parser.add_argument("--properties", default=None, help="S3 .properties file")
    parser.add_argument("--region", default=None)
    parser.add_argument("--endpoint-url", default=None)
    parser.add_argument("--no-progress", action="store_true")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    pattern = separators_to_system(args.filter) if args.filter else None

    cfg = load_s3_config_or_default(args.properties)
    if args.endpoint_url:
        cfg.endpoint_url = args.endpoint_url
    source = S3ReleaseSource(
        create_s3_client(cfg, args.region),
        args.host,
        args.product,
        args.version,
    )

    available = False
    try:
        available = source.is_available()
    except (BotoCoreError, ClientError, OSError) as exc:
        print(_describe(exc), file=sys.stderr)

    print(f"Version {args.version} available: {str(available).lower()}")
    if not available:
        return 0

    try:
        manifest = source.get_manifest()
    except ManifestError as exc:
        print("Couldn't get file info map", file=sys.stderr)
        print(f"[WARN] {exc}", file=sys.stderr)
        return 1

    result = sync_release(
        source,
        args.dest,
        pattern,
        manifest=manifest,
        max_workers=args.workers,
        progress=not args.no_progress,
    )
    if result.errors:
        print(f"[WARN] {len(result.errors)} of {len(result.selected)} files failed", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
