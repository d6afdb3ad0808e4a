"""pytest fixtures for clipforge tests.

Provides:
- settings: Test settings (no retries delays, no storage, fixed provider URL)
- engine / session / uow_factory: In-memory SQLite database, fresh per test
- redis: fakeredis asyncio client, flushed per test
- fake_provider: Scriptable stand-in for the predictions API (httpx.MockTransport)
- services: Full service graph wired to the fakes
- client: httpx AsyncClient over ASGITransport for API tests
"""

import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("RUN_WORKERS", "false")

import itertools  # noqa: E402
from typing import AsyncGenerator, Optional  # noqa: E402

import fakeredis  # noqa: E402
import httpx  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: E402

from clipforge.core.config import Settings  # noqa: E402
from clipforge.core.container import ServiceContainer, build_services  # noqa: E402
from clipforge.core.database import create_engine, create_tables  # noqa: E402
from clipforge.models.profile import PlanType, Profile  # noqa: E402
from clipforge.services.prompt_enhancer import PromptEnhancer  # noqa: E402
from clipforge.uow import create_uow_factory  # noqa: E402

PROVIDER_URL = "https://provider.test/v1"
VIDEO_URL = "https://cdn.provider.test/output/video.mp4"


class FakeProvider:
    """In-memory predictions API.

    ``statuses`` is the sequence of statuses a newly created prediction walks
    through on successive GETs; the last one sticks. ``create_errors`` holds
    HTTP status codes returned by upcoming create calls before one succeeds.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.statuses: list[str] = ["processing", "succeeded"]
        self.create_errors: list[int] = []
        self.get_errors: list[int] = []
        self.failure_message = "CUDA out of memory"
        self.output: Optional[list[str]] = [VIDEO_URL]
        self._ids = itertools.count(1)
        self._predictions: dict[str, list[str]] = {}

    def count(self, method: str, suffix: str = "") -> int:
        return sum(
            1 for r in self.requests if r.method == method and r.url.path.endswith(suffix)
        )

    def _body(self, prediction_id: str, status: str) -> dict:
        return {
            "id": prediction_id,
            "status": status,
            "version": "test",
            "output": self.output if status == "succeeded" else None,
            "error": self.failure_message if status == "failed" else None,
            "metrics": {"predict_time": 12.5} if status == "succeeded" else None,
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/v1")

        if request.method == "POST" and path == "/predictions":
            if self.create_errors:
                code = self.create_errors.pop(0)
                return httpx.Response(code, json={"detail": f"error {code}"})
            prediction_id = f"pred_{next(self._ids)}"
            self._predictions[prediction_id] = list(self.statuses)
            return httpx.Response(201, json=self._body(prediction_id, "starting"))

        parts = path.strip("/").split("/")
        if len(parts) >= 2 and parts[0] == "predictions":
            prediction_id = parts[1]
            sequence = self._predictions.get(prediction_id)
            if sequence is None:
                return httpx.Response(404, json={"detail": "Not found"})

            if request.method == "POST" and parts[-1] == "cancel":
                self._predictions[prediction_id] = ["canceled"]
                return httpx.Response(200, json=self._body(prediction_id, "canceled"))

            if request.method == "GET":
                if self.get_errors:
                    code = self.get_errors.pop(0)
                    return httpx.Response(code, json={"detail": f"error {code}"})
                status = sequence.pop(0) if len(sequence) > 1 else sequence[0]
                return httpx.Response(200, json=self._body(prediction_id, status))

        return httpx.Response(404, json={"detail": "Unknown route"})


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,  # type: ignore[call-arg]
        APP_ENV="test",
        DATABASE_URL="sqlite+aiosqlite://",
        REPLICATE_API_TOKEN="test-token",
        REPLICATE_API_URL=PROVIDER_URL,
        PUBLIC_BASE_URL="https://api.clipforge.test",
        ADMIN_TOKEN="admin-secret",
        RUN_WORKERS=False,
        PROVIDER_RETRY_DELAY_SECONDS=0,
        PREDICTION_POLL_INTERVAL_SECONDS=0,
        PREDICTION_TIMEOUT_SECONDS=5,
        JOB_BACKOFF_SECONDS=2,
        JOB_MAX_RETRIES=3,
        STORAGE_URL="",
        STORAGE_SERVICE_KEY="",
    )


@pytest_asyncio.fixture
async def engine(settings):
    engine = create_engine(settings.database_url)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine) -> AsyncGenerator[AsyncSession, None]:
    """Session for arranging data and asserting on it directly."""
    session_factory = async_sessionmaker(bind=engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def uow_factory(engine):
    session_factory = async_sessionmaker(bind=engine, expire_on_commit=False)
    return create_uow_factory(session_factory)


@pytest_asyncio.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    await client.flushall()
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


def echo_enhancer_run(model, input):
    """Stands in for replicate.Client.run: returns the prompt as streamed tokens."""
    return ["Enhanced: ", input["prompt"].split("\n")[0]]


@pytest_asyncio.fixture
async def services(settings, engine, redis, fake_provider) -> AsyncGenerator[ServiceContainer, None]:
    provider_http = httpx.AsyncClient(transport=httpx.MockTransport(fake_provider.handler))
    storage_http = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(500))
    )
    container = build_services(
        settings,
        redis=redis,
        engine=engine,
        provider_http=provider_http,
        storage_http=storage_http,
        enhancer=PromptEnhancer("test-token", run=echo_enhancer_run),
    )
    yield container
    await provider_http.aclose()
    await storage_http.aclose()


@pytest_asyncio.fixture
async def client(services) -> AsyncGenerator[AsyncClient, None]:
    from clipforge.app import create_app

    app = create_app(services=services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


async def create_profile(
    uow_factory, user_id: str = "user-1", plan: PlanType = PlanType.STARTER, credits: int = 100
) -> Profile:
    async with await uow_factory() as uow:
        return await uow.profiles.add(Profile(id=user_id, plan=plan, credits=credits))


async def get_balance(uow_factory, user_id: str) -> int:
    async with await uow_factory() as uow:
        profile = await uow.profiles.get_by_id(user_id)
    assert profile is not None
    return profile.credits
