"""Replicate predictions API client for text-to-video.

Every outbound call takes a token from the shared bucket, is retried on
transient failures with exponential backoff, and has its HTTP status mapped
onto the service error hierarchy. Creation responses are cached by a hash of
the normalized request so identical submissions reuse one prediction.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from clipforge.core import metrics
from clipforge.models.video import GenerationRequest, Prediction, PredictionStatus
from clipforge.services.cache.manager import CacheManager
from clipforge.services.exceptions import (
    PredictionCancelledError,
    PredictionFailedError,
    PredictionTimeoutError,
    ProviderAuthError,
    ProviderBadRequestError,
    ProviderNetworkError,
    ProviderNotFoundError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    TransientError,
)
from clipforge.services.provider.rate_limiter import TokenBucket
from clipforge.services.video import catalog

logger = structlog.get_logger()

PREDICTION_CACHE_TTL = 3600

OnUpdate = Callable[[Prediction, float], Awaitable[None]]


def classify_response(response: httpx.Response) -> None:
    """Raise the service error matching a non-2xx provider response.

    Classification rules:
        - 400/422 (validation) → ProviderBadRequestError
        - 401/403 (authentication) → ProviderAuthError
        - 404 → ProviderNotFoundError
        - 429 (rate limit), 5xx → ProviderUnavailableError (transient)
        - Other non-2xx → ProviderBadRequestError
    """
    if response.is_success:
        return

    status = response.status_code
    try:
        detail = response.json().get("detail") or response.reason_phrase
    except ValueError:
        detail = response.text or response.reason_phrase

    message = f"Replicate API error: {status} - {detail}"

    if status in (400, 422):
        raise ProviderBadRequestError(message)
    if status in (401, 403):
        raise ProviderAuthError(message)
    if status == 404:
        raise ProviderNotFoundError(message)
    if status == 429 or status >= 500:
        raise ProviderUnavailableError(message)
    raise ProviderBadRequestError(message)


class ProviderClient:
    """Async client for the prediction lifecycle (create, get, cancel, poll)."""

    def __init__(
        self,
        api_token: str,
        base_url: str = "https://api.replicate.com/v1",
        cache: Optional[CacheManager] = None,
        bucket: Optional[TokenBucket] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize provider client.

        Args:
            api_token: Replicate API token (from REPLICATE_API_TOKEN env var)
            base_url: API root, overridable for tests
            cache: Two-tier cache for prediction creation responses
            bucket: Shared token bucket (defaults to 100 burst, 10/s)
            http_client: Pre-built client (tests pass one with a MockTransport)
            max_retries: Attempts per request for transient failures
            retry_delay: Base backoff delay; attempt n waits retry_delay * 2**n
            timeout: Per-request timeout in seconds
        """
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.cache = cache
        self.bucket = bucket or TokenBucket()
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._clock = clock
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(timeout=timeout)
        self.headers = {
            "Authorization": f"Bearer {api_token}",
            "Content-Type": "application/json",
            "User-Agent": "clipforge/0.1",
        }

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http.aclose()

    # Pricing and validation live in the catalog; exposed here for callers
    # that only hold a client.
    calculate_credits = staticmethod(catalog.calculate_credits)
    estimate_time = staticmethod(catalog.estimate_time)
    validate_request = staticmethod(catalog.validate_request)

    async def _request(
        self, method: str, path: str, operation: str, payload: Optional[dict] = None
    ) -> dict[str, Any]:
        await self.bucket.acquire("provider")
        start = self._clock()
        status = "error"
        try:
            response = await self.http.request(
                method, f"{self.base_url}{path}", headers=self.headers, json=payload
            )
            status = str(response.status_code)
            classify_response(response)
            return response.json()
        except httpx.TimeoutException as e:
            status = "timeout"
            raise ProviderTimeoutError(f"Request timeout: {e}") from e
        except httpx.TransportError as e:
            raise ProviderNetworkError(f"Network error: {e}") from e
        finally:
            metrics.PROVIDER_CALLS.labels(operation=operation, status=status).inc()
            metrics.PROVIDER_LATENCY.labels(operation=operation).observe(self._clock() - start)

    async def _with_retry(
        self, method: str, path: str, operation: str, payload: Optional[dict] = None
    ) -> dict[str, Any]:
        # PermanentError propagates on the first attempt
        attempt = 0
        while True:
            try:
                return await self._request(method, path, operation, payload)
            except TransientError as e:
                attempt += 1
                if attempt >= self.max_retries:
                    raise
                delay = self.retry_delay * (2 ** (attempt - 1))
                logger.warning(
                    "provider.retry",
                    operation=operation,
                    attempt=attempt,
                    max_retries=self.max_retries,
                    delay_seconds=delay,
                    error=str(e),
                )
                await self._sleep(delay)

    def build_payload(
        self, request: GenerationRequest, webhook_url: Optional[str] = None
    ) -> dict[str, Any]:
        info = catalog.get_model_info(request.model)
        model_input: dict[str, Any] = {
            "prompt": request.prompt.strip(),
            "duration": request.duration,
        }
        if request.negative_prompt:
            model_input["negative_prompt"] = request.negative_prompt
        if request.seed is not None:
            model_input["seed"] = request.seed
        if request.aspect_ratio:
            model_input["aspect_ratio"] = request.aspect_ratio.value
        if request.quality:
            model_input["quality"] = request.quality.value
        if request.style:
            model_input["style"] = request.style.value

        payload: dict[str, Any] = {"version": info.version, "input": model_input}
        if webhook_url:
            payload["webhook"] = webhook_url
            payload["webhook_events_filter"] = ["completed", "failed"]
        return payload

    async def create_prediction(
        self, request: GenerationRequest, webhook_url: Optional[str] = None
    ) -> Prediction:
        """Create a prediction, or return the cached one for an identical request.

        Raises:
            GenerationValidationError: Request violates model constraints
            TransientError: Provider unavailable after retries
            PermanentError: Auth/validation failure (never retried)
        """
        catalog.validate_request(request)
        cache_key = catalog.prediction_cache_key(request)

        if self.cache is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                logger.info("provider.prediction_cache_hit", cache_key=cache_key)
                return Prediction.model_validate(cached)

        data = await self._with_retry(
            "POST", "/predictions", "create", self.build_payload(request, webhook_url)
        )
        prediction = Prediction.model_validate(data)

        if self.cache is not None:
            await self.cache.set(
                cache_key, prediction.model_dump(mode="json"), PREDICTION_CACHE_TTL
            )

        logger.info(
            "provider.prediction_created",
            prediction_id=prediction.id,
            model=request.model.value,
            status=prediction.status.value,
        )
        return prediction

    async def forget_prediction(self, request: GenerationRequest) -> None:
        """Drop the cached creation response so a retry creates a fresh prediction."""
        if self.cache is not None:
            await self.cache.delete(catalog.prediction_cache_key(request))

    async def get_prediction(self, prediction_id: str) -> Prediction:
        data = await self._with_retry("GET", f"/predictions/{prediction_id}", "get")
        return Prediction.model_validate(data)

    async def cancel_prediction(self, prediction_id: str) -> Prediction:
        data = await self._with_retry("POST", f"/predictions/{prediction_id}/cancel", "cancel")
        logger.info("provider.prediction_cancelled", prediction_id=prediction_id)
        return Prediction.model_validate(data)

    async def poll_prediction(
        self,
        prediction_id: str,
        timeout: float = 300.0,
        interval: float = 3.0,
        on_update: Optional[OnUpdate] = None,
    ) -> Prediction:
        """Poll until the prediction reaches a terminal status.

        ``on_update(prediction, elapsed_seconds)`` is awaited after every
        successful read; exceptions it raises (e.g. cancellation) propagate.

        Raises:
            PredictionFailedError: Provider reported failure
            PredictionCancelledError: Provider reported cancellation
            PredictionTimeoutError: Not terminal before ``timeout`` seconds
        """
        start = self._clock()

        while self._clock() - start < timeout:
            prediction = await self.get_prediction(prediction_id)
            elapsed = self._clock() - start

            if on_update is not None:
                await on_update(prediction, elapsed)

            if prediction.status == PredictionStatus.SUCCEEDED:
                return prediction
            if prediction.status == PredictionStatus.FAILED:
                raise PredictionFailedError(prediction.error or "Prediction failed")
            if prediction.status == PredictionStatus.CANCELED:
                raise PredictionCancelledError("Prediction was cancelled")

            await self._sleep(interval)

        raise PredictionTimeoutError(
            f"Prediction {prediction_id} polling timed out after {timeout:.0f}s"
        )
