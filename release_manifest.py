from __future__ import annotations

import hashlib
import json
import ntpath
import posixpath
from dataclasses import dataclass, field
from typing import Any, Iterator, List

DEFAULT_HASH_ALGORITHM = "sha1"
DEFAULT_COMPRESSION = "gzip"
SUPPORTED_COMPRESSIONS = ("gzip", "zstd")


class ManifestError(ValueError):
    """Raised when a release manifest cannot be obtained or is malformed."""


@dataclass(frozen=True)
class ManifestEntry:
    """Expected state of one file in a release."""

    path: str
    size: int
    hash: str


@dataclass(frozen=True)
class ReleaseManifest:
    entries: List[ManifestEntry] = field(default_factory=list)
    hash_algorithm: str = DEFAULT_HASH_ALGORITHM
    compression: str = DEFAULT_COMPRESSION

    def __iter__(self) -> Iterator[ManifestEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)


def normalize_manifest_path(path: str) -> str:
    if ntpath.splitdrive(path)[0]:
        raise ManifestError(f"Drive-qualified path in manifest: {path!r}")
    normalized = posixpath.normpath(path.replace("\\", "/"))
    if normalized in ("", ".", "/"):
        raise ManifestError(f"Unsafe path in manifest: {path!r}")
    if normalized.startswith("/") or normalized == ".." or normalized.startswith("../"):
        raise ManifestError(f"Unsafe path in manifest: {path!r}")
    return normalized


def _is_fixed_size_digest(name: str) -> bool:
    # shake_* digests have no fixed length
    try:
        return hashlib.new(name).digest_size > 0
    except ValueError:
        return False


def _parse_entry(raw: Any, index: int) -> ManifestEntry:
    if not isinstance(raw, dict):
        raise ManifestError(f"Manifest entry {index} must be an object")
    for key in ("path", "size", "hash"):
        if key not in raw:
            raise ManifestError(f"Manifest entry {index} is missing {key!r}")

    path = raw["path"]
    size = raw["size"]
    digest = raw["hash"]
    if not isinstance(path, str):
        raise ManifestError(f"Manifest entry {index}: path must be a string")
    # bool is an int subclass
    if not isinstance(size, int) or isinstance(size, bool) or size < 0:
        raise ManifestError(f"Manifest entry {index}: invalid size {size!r}")
    if not isinstance(digest, str) or not digest:
        raise ManifestError(f"Manifest entry {index}: hash must be a non-empty string")

    return ManifestEntry(path=normalize_manifest_path(path), size=size, hash=digest.lower())


def parse_manifest(payload: bytes) -> ReleaseManifest:
    """
    Parse a release manifest document.

    Expected layout:
        {"hash_algorithm": "sha1", "compression": "gzip",
         "files": [{"path": "system/a.dll", "size": 100, "hash": "..."}]}

    hash_algorithm and compression are optional.
    """
    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ManifestError(f"Manifest is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ManifestError("Manifest must be a JSON object")

    files = data.get("files")
    if not isinstance(files, list):
        raise ManifestError("Manifest must include a files list")

    hash_algorithm = data.get("hash_algorithm", DEFAULT_HASH_ALGORITHM)
    if not isinstance(hash_algorithm, str) or not _is_fixed_size_digest(hash_algorithm.lower()):
        raise ManifestError(f"Unsupported hash algorithm: {hash_algorithm!r}")

    compression = data.get("compression", DEFAULT_COMPRESSION)
    if compression not in SUPPORTED_COMPRESSIONS:
        raise ManifestError(f"Unsupported compression: {compression!r}")

    entries: List[ManifestEntry] = []
    seen_paths: set[str] = set()
    for index, raw in enumerate(files):
        entry = _parse_entry(raw, index)
        if entry.path in seen_paths:
            raise ManifestError(f"Duplicate manifest path: {entry.path}")
        seen_paths.add(entry.path)
        entries.append(entry)

    return ReleaseManifest(
        entries=entries,
        hash_algorithm=hash_algorithm.lower(),
        compression=compression,
    )
