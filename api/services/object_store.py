# api/services/object_store.py
"""Staged upload storage on Supabase Storage, plus signed-URL download."""
from __future__ import annotations

import asyncio
from typing import Any, Optional

import aiohttp
from supabase import Client, create_client

from api.core.config import settings
from api.core.exceptions import ExternalServiceError, StagedFileDownloadError
from api.core.logging import get_structlog_logger

logger = get_structlog_logger()


def create_storage_client() -> Client:
    if not settings.supabase_url or not settings.supabase_service_role_key:
        raise ExternalServiceError(
            "Object storage is not configured",
            details={"missing": "SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY"},
        )
    return create_client(settings.supabase_url, settings.supabase_service_role_key)


class SupabaseObjectStore:
    """
    Thin async wrapper over a storage bucket.

    The supabase client is synchronous, so calls run in a worker thread to keep
    the event loop free while bytes are in transit.
    """

    def __init__(self, client: Optional[Client] = None, bucket: str = None):
        self._client = client
        self.bucket = bucket or settings.csv_storage_bucket

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = create_storage_client()
        return self._client

    async def put(self, content: bytes, key: str, content_type: str) -> None:
        def _upload() -> Any:
            return self.client.storage.from_(self.bucket).upload(
                path=key,
                file=content,
                file_options={"content-type": content_type},
            )

        try:
            await asyncio.to_thread(_upload)
        except Exception as e:
            logger.error("object_store.put_failed", bucket=self.bucket, key=key, error=str(e))
            raise ExternalServiceError(
                "Failed to store uploaded file",
                details={"storage_key": key},
            ) from e

        logger.info("object_store.stored", bucket=self.bucket, key=key, size_bytes=len(content))

    async def signed_get_url(self, key: str, ttl_seconds: int = None) -> str:
        ttl = ttl_seconds or settings.storage_signed_url_ttl_seconds

        def _sign() -> Any:
            return self.client.storage.from_(self.bucket).create_signed_url(
                path=key,
                expires_in=ttl,
            )

        try:
            response = await asyncio.to_thread(_sign)
        except Exception as e:
            logger.error("object_store.sign_failed", bucket=self.bucket, key=key, error=str(e))
            raise StagedFileDownloadError(f"Could not sign staged file {key}") from e

        url = None
        if response:
            url = response.get("signedURL") or response.get("signedUrl")
        if not url:
            raise StagedFileDownloadError(f"Storage returned no signed URL for {key}")

        return url


async def download_signed_url(url: str, timeout: int = None) -> bytes:
    """GET the staged bytes; any transport or non-2xx outcome is a download failure."""
    client_timeout = aiohttp.ClientTimeout(
        total=timeout or settings.staged_download_timeout_seconds
    )

    try:
        async with aiohttp.ClientSession(timeout=client_timeout) as session:
            async with session.get(url) as response:
                if not 200 <= response.status < 300:
                    raise StagedFileDownloadError(
                        f"Staged file download returned HTTP {response.status}"
                    )
                return await response.read()
    except asyncio.TimeoutError as e:
        raise StagedFileDownloadError("Staged file download timed out") from e
    except aiohttp.ClientError as e:
        raise StagedFileDownloadError(f"Staged file download failed: {str(e)[:200]}") from e


_object_store: Optional[SupabaseObjectStore] = None


def get_object_store() -> SupabaseObjectStore:
    global _object_store

    if _object_store is None:
        _object_store = SupabaseObjectStore()

    return _object_store
