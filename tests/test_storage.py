"""Object storage client tests against a MockTransport."""

import httpx
import pytest

from clipforge.services.exceptions import ProviderAuthError, ProviderUnavailableError
from clipforge.services.storage import StorageClient

SOURCE_URL = "https://cdn.provider.test/output/video.mp4"
STORAGE_URL = "https://storage.test"


class FakeStorage:
    def __init__(self, upload_status: int = 200):
        self.upload_status = upload_status
        self.uploads: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, content=b"mp4-bytes")
        self.uploads.append(request)
        return httpx.Response(self.upload_status, json={"Key": "ok"})


def make_client(fake: FakeStorage, base_url: str = STORAGE_URL) -> StorageClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake.handler))
    return StorageClient(base_url, "service-key", "generations", http_client=http)


@pytest.mark.asyncio
async def test_upload_copies_artifact():
    fake = FakeStorage()
    storage = make_client(fake)

    url = await storage.upload_video(SOURCE_URL, "user-1", "gen_1")

    assert url == f"{STORAGE_URL}/storage/v1/object/public/generations/videos/user-1/gen_1.mp4"
    upload = fake.uploads[0]
    assert upload.url.path == "/storage/v1/object/generations/videos/user-1/gen_1.mp4"
    assert upload.headers["Authorization"] == "Bearer service-key"
    assert upload.headers["Content-Type"] == "video/mp4"
    assert upload.content == b"mp4-bytes"
    await storage.http.aclose()


@pytest.mark.asyncio
async def test_upload_errors_are_classified():
    unavailable = make_client(FakeStorage(upload_status=503))
    rejected = make_client(FakeStorage(upload_status=401))

    with pytest.raises(ProviderUnavailableError):
        await unavailable.upload_video(SOURCE_URL, "user-1", "gen_1")
    with pytest.raises(ProviderAuthError):
        await rejected.upload_video(SOURCE_URL, "user-1", "gen_1")
    await unavailable.http.aclose()
    await rejected.http.aclose()


@pytest.mark.asyncio
async def test_fallback_to_provider_url_on_failure():
    storage = make_client(FakeStorage(upload_status=500))

    assert await storage.persist_or_fallback(SOURCE_URL, "user-1", "gen_1") == SOURCE_URL
    await storage.http.aclose()


@pytest.mark.asyncio
async def test_disabled_storage_keeps_provider_url():
    fake = FakeStorage()
    storage = make_client(fake, base_url="")

    assert not storage.enabled
    assert await storage.persist_or_fallback(SOURCE_URL, "user-1", "gen_1") == SOURCE_URL
    assert fake.uploads == []
    await storage.http.aclose()
