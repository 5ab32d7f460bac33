"""
Stage resolution: logical source name -> concrete file URIs.

Object storage is an external collaborator reached through the
ObjectStore interface (list files under a prefix, open one as a byte
stream). Local paths, file:// URIs and s3:// prefixes are supported.
"""

import io
from collections.abc import Mapping
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path, PurePosixPath
from typing import Any, BinaryIO, Protocol

from stageload.config.settings import StageLocation
from stageload.errors import ConfigError, NotFoundError
from stageload.utils.logging import get_logger

log = get_logger(__name__)


class ObjectStore(Protocol):
    """Source collaborator: read-only listing and streaming of files."""

    def list_files(self, prefix: str, pattern: str | None = None) -> list[str]:
        """List file URIs under prefix whose names match pattern."""
        ...

    def open(self, uri: str) -> BinaryIO:
        """Open a file URI as a binary stream."""
        ...


def _matches(name: str, pattern: str | None) -> bool:
    return pattern is None or fnmatch(name, pattern)


class LocalObjectStore:
    """Local filesystem backend for plain paths and file:// URIs."""

    @staticmethod
    def to_path(uri: str) -> Path:
        """Strip a file:// scheme and return a Path."""
        return Path(uri.removeprefix("file://")).expanduser()

    def list_files(self, prefix: str, pattern: str | None = None) -> list[str]:
        """
        List files under a directory (recursively) or a single file.

        Raises:
            NotFoundError: If the prefix does not exist.
        """
        path = self.to_path(prefix)
        if not path.exists():
            msg = f"Stage location does not exist: {path}"
            raise NotFoundError(msg)
        if path.is_file():
            return [str(path)] if _matches(path.name, pattern) else []
        return [
            str(p)
            for p in sorted(path.rglob("*"))
            if p.is_file() and not p.name.startswith(".") and _matches(p.name, pattern)
        ]

    def open(self, uri: str) -> BinaryIO:
        """Open a local file for binary reading."""
        path = self.to_path(uri)
        if not path.is_file():
            msg = f"Staged file not found: {path}"
            raise NotFoundError(msg)
        return path.open("rb")


@dataclass(frozen=True)
class S3Location:
    """Parsed s3:// location."""

    bucket: str
    prefix: str

    @classmethod
    def parse(cls, uri: str) -> "S3Location":
        """Parse s3://bucket/prefix (prefix may be empty)."""
        stripped = uri.removeprefix("s3://")
        bucket, _, prefix = stripped.partition("/")
        if not bucket:
            msg = f"Invalid S3 URI '{uri}': expected s3://bucket/prefix"
            raise ConfigError(msg)
        return cls(bucket=bucket, prefix=prefix)


class S3ObjectStore:
    """S3 backend using boto3."""

    def __init__(
        self,
        client: Any = None,
        *,
        profile: str | None = None,
        region: str | None = None,
    ) -> None:
        """
        Initialize the S3 store.

        Args:
            client: Pre-built boto3 S3 client (created lazily otherwise).
            profile: AWS profile name for the lazily created session.
            region: AWS region for the lazily created session.
        """
        self._client = client
        self._profile = profile
        self._region = region

    @property
    def client(self) -> Any:
        """boto3 S3 client, created on first use."""
        if self._client is None:
            try:
                import boto3
            except ImportError as e:
                msg = "s3:// stages require boto3. Install stageload[s3]."
                raise ConfigError(msg) from e
            kwargs: dict[str, str] = {}
            if self._profile:
                kwargs["profile_name"] = self._profile
            if self._region:
                kwargs["region_name"] = self._region
            self._client = boto3.session.Session(**kwargs).client("s3")
        return self._client

    def list_files(self, prefix: str, pattern: str | None = None) -> list[str]:
        """
        List object URIs under an S3 prefix.

        Raises:
            NotFoundError: If the bucket cannot be listed.
        """
        location = S3Location.parse(prefix)
        client = self.client
        paginator = client.get_paginator("list_objects_v2")
        uris: list[str] = []
        try:
            for page in paginator.paginate(Bucket=location.bucket, Prefix=location.prefix):
                for item in page.get("Contents", []):
                    key = item["Key"]
                    if key.endswith("/"):
                        continue
                    if _matches(PurePosixPath(key).name, pattern):
                        uris.append(f"s3://{location.bucket}/{key}")
        except client.exceptions.ClientError as e:
            msg = f"Stage location unreachable: {prefix} ({e})"
            raise NotFoundError(msg) from e
        return sorted(uris)

    def open(self, uri: str) -> BinaryIO:
        """Download an object into memory and return it as a stream."""
        location = S3Location.parse(uri)
        response = self.client.get_object(Bucket=location.bucket, Key=location.prefix)
        return io.BytesIO(response["Body"].read())


class StageResolver:
    """
    Maps logical stage names to concrete file URIs.

    Relative local URLs resolve against data_root.
    """

    def __init__(
        self,
        stages: Mapping[str, StageLocation],
        *,
        data_root: Path = Path("."),
        stores: Mapping[str, ObjectStore] | None = None,
    ) -> None:
        """
        Initialize the resolver.

        Args:
            stages: Configured stage locations by name.
            data_root: Root for relative local stage URLs.
            stores: Backends by URI scheme ("file", "s3").
        """
        self.stages = dict(stages)
        self.data_root = data_root
        self.stores: dict[str, ObjectStore] = {"file": LocalObjectStore()}
        if stores:
            self.stores.update(stores)

    def _store_for(self, uri: str) -> ObjectStore:
        scheme = uri.split("://", 1)[0] if "://" in uri else "file"
        if scheme == "s3" and "s3" not in self.stores:
            self.stores["s3"] = S3ObjectStore()
        if scheme not in self.stores:
            msg = f"Unsupported stage URI scheme '{scheme}' in {uri}"
            raise ConfigError(msg)
        return self.stores[scheme]

    def location_uri(self, stage: StageLocation) -> str:
        """Absolute URI of a stage's prefix."""
        if "://" in stage.url:
            return stage.url
        path = Path(stage.url).expanduser()
        return str(path if path.is_absolute() else self.data_root / path)

    def resolve(self, source_name: str) -> list[str]:
        """
        Resolve a stage name to matching file URIs.

        Args:
            source_name: Configured stage name.

        Returns:
            Sorted list of file URIs.

        Raises:
            NotFoundError: If the stage is unknown, unreachable, or empty
                while emptiness is not permitted.
        """
        if source_name not in self.stages:
            available = ", ".join(self.stages) or "none"
            msg = f"Unknown stage '{source_name}'. Available: {available}"
            raise NotFoundError(msg)

        stage = self.stages[source_name]
        prefix = self.location_uri(stage)
        uris = self._store_for(prefix).list_files(prefix, stage.pattern)

        if not uris and not stage.allow_empty:
            msg = f"Stage '{source_name}' has no files matching {stage.pattern or '*'} at {prefix}"
            raise NotFoundError(msg)

        log.info("Resolved stage", stage=source_name, prefix=prefix, files=len(uris))
        return uris

    def open(self, uri: str) -> BinaryIO:
        """Open a resolved file URI as a binary stream."""
        return self._store_for(uri).open(uri)
