"""
Object storage boundary.

Blobs are addressed as ``{source}/{filename}``. The local backend mirrors that
layout on disk for development and tests; the S3 backend talks to any
S3-compatible endpoint through boto3.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import boto3
from botocore.client import BaseClient
from flask import Flask

from .errors import SchemaContractError


@dataclass(frozen=True)
class BlobInfo:
    path: str
    size: int | None = None

    @property
    def source(self) -> str:
        return self.path.split("/", 1)[0]

    @property
    def relative_name(self) -> str:
        parts = self.path.split("/", 1)
        return parts[1] if len(parts) == 2 else parts[0]


class BlobStore(Protocol):
    def list_blobs(self, source: str | None = None) -> list[BlobInfo]: ...

    def read_bytes(self, path: str) -> bytes: ...


class LocalBlobStore:
    """Directory-backed store; the first directory level is the source name."""

    def __init__(self, root: str | os.PathLike[str]):
        self.root = Path(root)

    def list_blobs(self, source: str | None = None) -> list[BlobInfo]:
        base = self.root / source if source else self.root
        if not base.exists():
            return []
        blobs = []
        for file_path in sorted(base.rglob("*")):
            if not file_path.is_file():
                continue
            relative = file_path.relative_to(self.root).as_posix()
            if "/" not in relative:
                continue
            blobs.append(BlobInfo(relative, file_path.stat().st_size))
        return blobs

    def read_bytes(self, path: str) -> bytes:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise SchemaContractError(f"Blob path escapes storage root: {path}", blob_path=path)
        if not target.is_file():
            raise SchemaContractError(f"Blob not found: {path}", blob_path=path)
        return target.read_bytes()

    def write_bytes(self, path: str, content: bytes) -> None:
        target = self.root / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)


def get_s3_client(*, region: str | None = None, endpoint_url: str | None = None) -> BaseClient:
    """Return a configured S3 client (supports S3-compatible endpoints)."""

    return boto3.client(
        "s3",
        region_name=region or None,
        endpoint_url=endpoint_url.rstrip("/") if endpoint_url else None,
    )


class S3BlobStore:
    def __init__(self, bucket: str, prefix: str = "", client: BaseClient | None = None):
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.client = client or get_s3_client()

    def _key(self, path: str) -> str:
        return f"{self.prefix}/{path}" if self.prefix else path

    def _strip(self, key: str) -> str:
        if self.prefix and key.startswith(self.prefix + "/"):
            return key[len(self.prefix) + 1 :]
        return key

    def list_blobs(self, source: str | None = None) -> list[BlobInfo]:
        list_prefix = self._key(f"{source}/" if source else "")
        paginator = self.client.get_paginator("list_objects_v2")
        blobs = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=list_prefix):
            for item in page.get("Contents", []):
                path = self._strip(item["Key"])
                if path.endswith("/") or "/" not in path:
                    continue
                blobs.append(BlobInfo(path, item.get("Size")))
        blobs.sort(key=lambda blob: blob.path)
        return blobs

    def read_bytes(self, path: str) -> bytes:
        response = self.client.get_object(Bucket=self.bucket, Key=self._key(path))
        return response["Body"].read()


def get_blob_store(app: Flask) -> BlobStore:
    """Build the store selected by ``PIPELINE_STORAGE_BACKEND``."""

    backend = app.config.get("PIPELINE_STORAGE_BACKEND", "local")
    if backend == "s3":
        bucket = app.config.get("PIPELINE_S3_BUCKET")
        if not bucket:
            raise RuntimeError("PIPELINE_S3_BUCKET must be set for the s3 storage backend.")
        client = get_s3_client(
            region=app.config.get("PIPELINE_S3_REGION"),
            endpoint_url=app.config.get("PIPELINE_S3_ENDPOINT_URL"),
        )
        return S3BlobStore(bucket, app.config.get("PIPELINE_S3_PREFIX") or "", client=client)
    root = app.config.get("PIPELINE_STORAGE_ROOT") or os.path.join(app.instance_path, "blobs")
    return LocalBlobStore(root)
