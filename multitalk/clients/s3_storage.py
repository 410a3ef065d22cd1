from __future__ import annotations

from typing import Any, Callable, Dict, TypeVar

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from multitalk.errors import StorageUnavailable

T = TypeVar("T")


class S3StorageClient:
    """User media uploads in an S3-compatible bucket.

    Without credentials objects are kept in process memory, which is what the
    local and test setups run on.
    """

    def __init__(
        self,
        bucket: str,
        access_key: str | None,
        secret_key: str | None,
        endpoint_url: str | None = None,
        region_name: str | None = None,
        public_url: str | None = None,
        timeout: float = 30.0,
        addressing_style: str | None = None,
    ) -> None:
        self.bucket = (bucket or "").strip()
        self.access_key = (access_key or "").strip()
        self.secret_key = (secret_key or "").strip()
        self.endpoint_url = (endpoint_url or "").rstrip("/") or None
        self.public_url_base = (public_url or "").rstrip("/")
        self._memory: Dict[str, bytes] = {}
        self._client: Any = None
        if self.is_configured():
            session = boto3.session.Session(
                aws_access_key_id=self.access_key,
                aws_secret_access_key=self.secret_key,
                region_name=(region_name or "").strip() or None,
            )
            self._client = session.client(
                "s3",
                endpoint_url=self.endpoint_url,
                config=BotoConfig(
                    s3={"addressing_style": (addressing_style or "virtual").lower()},
                    connect_timeout=timeout,
                    read_timeout=timeout,
                    retries={"max_attempts": 2},
                ),
            )

    def is_configured(self) -> bool:
        return bool(self.bucket and self.access_key and self.secret_key)

    def upload_bytes(self, path: str, content: bytes, content_type: str = "application/octet-stream") -> str:
        key = self._key(path)
        if self._client is None:
            self._memory[key] = content
        else:
            self._call(
                "upload",
                lambda: self._client.put_object(Bucket=self.bucket, Key=key, Body=content, ContentType=content_type),
            )
        return key

    def delete(self, path: str) -> None:
        key = self._key(path)
        if self._client is None:
            self._memory.pop(key, None)
            return
        # S3 reports success for keys that do not exist.
        self._call("delete", lambda: self._client.delete_object(Bucket=self.bucket, Key=key))

    def public_url(self, path: str) -> str:
        key = self._key(path)
        if self.public_url_base:
            return f"{self.public_url_base}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url}/{self.bucket}/{key}"
        return f"/{self.bucket}/{key}"

    def _call(self, action: str, operation: Callable[[], T]) -> T:
        try:
            return operation()
        except (BotoCoreError, ClientError) as exc:  # pragma: no cover - AWS error surface
            raise StorageUnavailable(f"S3 {action} failed: {exc}") from exc

    def _key(self, path: str) -> str:
        return "/".join(part for part in (path or "").strip().split("/") if part)
