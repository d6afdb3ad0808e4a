"""Object storage client for finished videos.

Downloads the provider artifact and re-uploads it under
``videos/<user_id>/<generation_id>.mp4`` so result URLs outlive the
provider's short-lived delivery links.
"""

from typing import Optional

import httpx
import structlog

from clipforge.services.exceptions import (
    PermanentError,
    ProviderAuthError,
    ProviderNetworkError,
    ProviderUnavailableError,
)

logger = structlog.get_logger()


class StorageClient:
    """Upload client for a storage REST API (``/storage/v1/object``)."""

    def __init__(
        self,
        base_url: str,
        service_key: str,
        bucket: str = "generations",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
    ):
        """Initialize storage client.

        Args:
            base_url: Storage service root (from STORAGE_URL env var)
            service_key: Service role key (from STORAGE_SERVICE_KEY env var)
            bucket: Destination bucket
            http_client: Pre-built client (tests pass one with a MockTransport)
            timeout: Download/upload timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.bucket = bucket
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    @property
    def enabled(self) -> bool:
        return bool(self.base_url and self.service_key)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http.aclose()

    def object_path(self, user_id: str, generation_id: str) -> str:
        return f"videos/{user_id}/{generation_id}.mp4"

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{self.bucket}/{path}"

    async def upload_video(self, source_url: str, user_id: str, generation_id: str) -> str:
        """Copy the artifact into the bucket and return its public URL.

        Raises:
            ProviderUnavailableError: Storage returned 429/5xx
            ProviderNetworkError: Timeout or connection failure
            ProviderAuthError: Service key rejected (401, 403)
            PermanentError: Any other non-2xx response
        """
        path = self.object_path(user_id, generation_id)
        try:
            download = await self.http.get(source_url)
            download.raise_for_status()

            response = await self.http.post(
                f"{self.base_url}/storage/v1/object/{self.bucket}/{path}",
                content=download.content,
                headers={
                    "Authorization": f"Bearer {self.service_key}",
                    "Content-Type": "video/mp4",
                    "x-upsert": "true",
                },
            )
        except httpx.HTTPStatusError as e:
            raise PermanentError(f"Artifact download failed: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderNetworkError(f"Storage network error: {e}") from e

        if response.status_code in (401, 403):
            raise ProviderAuthError(f"Storage rejected credentials ({response.status_code})")
        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderUnavailableError(
                f"Storage unavailable ({response.status_code}): {response.text}"
            )
        if not response.is_success:
            raise PermanentError(f"Storage upload failed ({response.status_code}): {response.text}")

        url = self.public_url(path)
        logger.info("storage.video_uploaded", generation_id=generation_id, path=path)
        return url

    async def persist_or_fallback(self, source_url: str, user_id: str, generation_id: str) -> str:
        """Upload the artifact; on any storage failure keep the provider URL."""
        if not self.enabled:
            return source_url
        try:
            return await self.upload_video(source_url, user_id, generation_id)
        except (PermanentError, ProviderNetworkError, ProviderUnavailableError) as e:
            logger.warning(
                "storage.upload_failed_using_provider_url",
                generation_id=generation_id,
                error=str(e),
            )
            return source_url
