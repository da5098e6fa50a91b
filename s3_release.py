from __future__ import annotations

import os
import posixpath
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from release_manifest import ManifestError, ReleaseManifest, parse_manifest

_PROPERTIES_ENCODING = "utf-8"
_MANIFEST_NAME = "manifest.json"
_FILES_PREFIX = "files"
_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
_PROPERTY_SEPARATOR = re.compile(r"\s*[=:]\s*")


@dataclass
class S3Config:
    """S3 connection settings."""

    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    session_token: Optional[str] = None
    endpoint_url: Optional[str] = None
    region: Optional[str] = None


def _add_property(props: Dict[str, str], line: str) -> None:
    if not line or line[0] in "#!":
        return
    match = _PROPERTY_SEPARATOR.search(line)
    if match is not None:
        props[line[: match.start()]] = line[match.end() :]


def _parse_properties(path: str) -> Dict[str, str]:
    """
    Read a Java-style .properties file.

    Supports # and ! comments, = or : separators and lines continued
    with a trailing backslash.
    """
    props: Dict[str, str] = {}
    pending = ""
    with open(path, "r", encoding=_PROPERTIES_ENCODING) as f:
        for raw in f:
            line = pending + raw.strip()
            if line.endswith("\\"):
                pending = line[:-1]
                continue
            pending = ""
            _add_property(props, line)
    _add_property(props, pending)
    return props


def _properties_path(path: Optional[str]) -> str:
    if path is None:
        path = os.environ.get("S3_PROPERTIES", "s3.properties")
    return path


def load_s3_config(path: Optional[str] = None) -> S3Config:
    """
    Load S3Config from a .properties file.

    Resolution order:
    1. Explicit path argument, if provided.
    2. S3_PROPERTIES env var.
    3. 's3.properties' in the current working directory.
    """
    path = _properties_path(path)
    if not os.path.exists(path):
        raise FileNotFoundError(f"S3 properties file not found: {path}")

    props = _parse_properties(path)

    return S3Config(
        access_key=props.get("s3.accessKey") or props.get("accessKey"),
        secret_key=props.get("s3.secretKey") or props.get("secretKey"),
        session_token=props.get("s3.sessionToken"),
        endpoint_url=props.get("s3.endpointUrl"),
        region=props.get("s3.region"),
    )


def load_s3_config_or_default(path: Optional[str] = None) -> S3Config:
    """Like load_s3_config, but an absent default file yields an empty config."""
    if path is None and not os.path.exists(_properties_path(None)):
        return S3Config()
    return load_s3_config(path)


def create_s3_client(cfg: S3Config, region: Optional[str] = None):
    """
    Create a boto3 S3 client from S3Config.

    If access_key / secret_key are not provided in the config, standard
    AWS credential resolution is used (env vars, shared credentials file, etc.).
    An explicit region overrides the one from the config.
    """
    boto_config = BotoConfig(
        signature_version="s3v4",
        max_pool_connections=16,
    )

    session_kwargs = {}
    client_kwargs = {}

    region = region or cfg.region
    if region:
        client_kwargs["region_name"] = region
    if cfg.endpoint_url:
        client_kwargs["endpoint_url"] = cfg.endpoint_url

    if cfg.access_key and cfg.secret_key:
        session_kwargs["aws_access_key_id"] = cfg.access_key
        session_kwargs["aws_secret_access_key"] = cfg.secret_key

    if cfg.session_token:
        session_kwargs["aws_session_token"] = cfg.session_token

    session = boto3.Session(**session_kwargs)
    return session.client(
        "s3",
        config=boto_config,
        **client_kwargs,
    )


def _is_missing(exc: ClientError) -> bool:
    code = exc.response.get("Error", {}).get("Code")
    return str(code) in _MISSING_CODES


class S3ReleaseSource:
    """
    Release metadata and payloads stored in one bucket.

    Layout:
        <product>/<version>/manifest.json
        <product>/<version>/files/<path>   (compressed payload)
    """

    def __init__(self, s3_client, bucket: str, product: str, version: Any) -> None:
        self._client = s3_client
        self.bucket = bucket
        self.product = product.strip("/")
        self.version = str(version)

    @property
    def prefix(self) -> str:
        return posixpath.join(self.product, self.version)

    @property
    def manifest_key(self) -> str:
        return posixpath.join(self.prefix, _MANIFEST_NAME)

    def payload_key(self, path: str) -> str:
        return posixpath.join(self.prefix, _FILES_PREFIX, path)

    def is_available(self) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=self.manifest_key)
        except ClientError as exc:
            if _is_missing(exc):
                return False
            raise
        return True

    def get_manifest(self) -> ReleaseManifest:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=self.manifest_key)
            body = response["Body"]
            try:
                payload = body.read()
            finally:
                body.close()
        except (BotoCoreError, ClientError, OSError) as exc:
            raise ManifestError(
                f"Failed to read s3://{self.bucket}/{self.manifest_key}: {exc}"
            ) from exc
        return parse_manifest(payload)

    def open_stream(self, path: str):
        response = self._client.get_object(Bucket=self.bucket, Key=self.payload_key(path))
        return response["Body"]


def is_version_available(s3_client, host: str, product: str, version: Any) -> bool:
    return S3ReleaseSource(s3_client, host, product, version).is_available()


def get_manifest(s3_client, host: str, product: str, version: Any) -> ReleaseManifest:
    return S3ReleaseSource(s3_client, host, product, version).get_manifest()
