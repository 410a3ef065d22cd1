from __future__ import annotations

from typing import Dict

import httpx

from multitalk.errors import StorageUnavailable


class SupabaseStorageClient:
    def __init__(
        self,
        api_url: str | None,
        public_url: str | None,
        bucket: str,
        api_key: str | None,
        timeout: float = 30.0,
    ) -> None:
        self.api_url = (api_url or "").rstrip("/")
        self.public_url_base = (public_url or "").rstrip("/")
        self.bucket = bucket.strip("/")
        self.api_key = (api_key or "").strip()
        self.timeout = timeout
        self._memory: Dict[str, bytes] = {}

    def is_configured(self) -> bool:
        return bool(self.api_url and self.api_key)

    def upload_bytes(self, path: str, content: bytes, content_type: str = "application/octet-stream") -> str:
        object_path = self._normalize_path(path)
        if not self.is_configured():
            self._memory[object_path] = content
            return object_path

        headers = self._headers()
        headers["Content-Type"] = content_type
        self._request("POST", object_path, headers=headers, content=content, expected=(200, 201), action="upload")
        return object_path

    def delete(self, path: str) -> None:
        object_path = self._normalize_path(path)
        if not self.is_configured():
            self._memory.pop(object_path, None)
            return
        self._request("DELETE", object_path, headers=self._headers(), expected=(200, 204, 404), action="delete")

    def public_url(self, path: str) -> str:
        base = self.public_url_base or f"{self.api_url.rstrip('/')}/storage/v1/object/public"
        joined_path = "/".join(part.strip("/") for part in (self.bucket, path))
        return f"{base.rstrip('/')}/{joined_path}"

    def _headers(self) -> dict[str, str]:
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
        }

    def _request(
        self,
        method: str,
        object_path: str,
        *,
        headers: dict[str, str],
        expected: tuple[int, ...],
        action: str,
        content: bytes | None = None,
    ) -> httpx.Response:
        url = f"{self.api_url}/storage/v1/object/{self.bucket}/{object_path}"
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.request(method, url, headers=headers, content=content)
        except httpx.HTTPError as exc:
            raise StorageUnavailable(f"Supabase {action} failed: {exc}") from exc
        if response.status_code not in expected:
            raise StorageUnavailable(f"Supabase {action} failed: {response.status_code} {response.text}")
        return response

    def _normalize_path(self, path: str) -> str:
        return path.strip().lstrip("/")
