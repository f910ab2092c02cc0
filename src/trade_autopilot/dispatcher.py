"""Quota-aware AI request dispatcher with retry, backoff and provider fallback.

Callers hand over a ``request_fn(provider)`` and get a ``DispatchResult``
back; they never implement their own retry logic.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Generic, Protocol, TypeVar

from loguru import logger
from pydantic import ValidationError

from .errors import (
    AllProvidersFailed,
    ProviderQuotaError,
    ProviderRequestFailed,
    QuotaExhausted,
)
from .events import EventBus
from .models import Recommendation
from .quota import QuotaTracker
from .settings import settings


T = TypeVar("T")


class ProviderClient(Protocol):
    def recommend(self, symbols: list[str]) -> Any:
        ...


@dataclass
class DispatchOptions:
    preferred_provider: str | None = None
    enable_fallback: bool = True
    retry_attempts: int = 3

    @classmethod
    def from_settings(cls) -> "DispatchOptions":
        return cls(
            preferred_provider=settings.preferred_provider,
            enable_fallback=settings.provider_enable_fallback,
            retry_attempts=settings.provider_retry_attempts,
        )


@dataclass
class DispatchResult(Generic[T]):
    data: T | None = None
    error: Exception | None = None
    provider_used: str | None = None
    fallback_used: bool = False
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.data  # type: ignore[return-value]


def is_quota_error(exc: BaseException) -> bool:
    if isinstance(exc, (ProviderQuotaError, QuotaExhausted)):
        return True
    response = getattr(exc, "response", None)
    return getattr(response, "status_code", None) == 429



def parse_recommendations(raw: Any) -> list[Recommendation]:
    """Validate a provider payload into typed recommendations.

    Accepts a bare list or an object with a ``recommendations`` list. Any
    malformed entry rejects the whole payload.
    """
    items = raw.get("recommendations") if isinstance(raw, dict) else raw
    if not isinstance(items, list):
        raise ProviderRequestFailed("Malformed provider payload: expected a list of recommendations")
    try:
        return [Recommendation.model_validate(item) for item in items]
    except ValidationError as exc:
        raise ProviderRequestFailed(f"Malformed recommendation payload: {exc.error_count()} errors") from exc


class ProviderDispatcher:
    def __init__(
        self,
        quota: QuotaTracker,
        clients: dict[str, ProviderClient] | None = None,
        *,
        bus: EventBus | None = None,
        timeout_seconds: float | None = None,
        backoff_base: float | None = None,
        backoff_cap: float | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.quota = quota
        self.clients = dict(clients or {})
        self.bus = bus
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.provider_timeout_seconds
        self.backoff_base = backoff_base if backoff_base is not None else settings.provider_backoff_base_seconds
        self.backoff_cap = backoff_cap if backoff_cap is not None else settings.provider_backoff_cap_seconds
        self._sleep = sleep_fn
        self._lock = threading.Lock()
        self._in_flight: set[ThreadPoolExecutor] = set()

    def backoff(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_cap)

    def _attempt(
        self,
        provider: str,
        request_fn: Callable[[str], Any],
        validator: Callable[[Any], T] | None,
    ) -> T:
        if not self.quota.record(provider):
            raise ProviderQuotaError(f"Quota exceeded for {provider.upper()}", provider=provider)

        # one worker per attempt; a hung call must not starve later attempts
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"provider-{provider}")
        with self._lock:
            self._in_flight.add(executor)
        future = executor.submit(request_fn, provider)
        try:
            raw = future.result(timeout=self.timeout_seconds)
        except FutureTimeoutError:
            raise ProviderRequestFailed(
                f"{provider.upper()} timed out after {self.timeout_seconds:.1f}s", provider=provider
            ) from None
        finally:
            executor.shutdown(wait=False)
            with self._lock:
                self._in_flight.discard(executor)
        return validator(raw) if validator else raw

    def dispatch(
        self,
        request_fn: Callable[[str], Any],
        options: DispatchOptions | None = None,
        validator: Callable[[Any], T] | None = None,
    ) -> DispatchResult[T]:
        opts = options or DispatchOptions.from_settings()
        preferred = opts.preferred_provider
        provider = self.quota.best_available(preferred)
        if provider is None:
            logger.warning("All AI providers have exceeded their quotas")
            return DispatchResult(error=QuotaExhausted("All AI providers have exceeded their quotas"))

        if preferred and provider != preferred:
            logger.info("Using fallback provider {} (preferred: {})", provider.upper(), preferred.upper())

        tried = [provider]
        attempt = 1
        calls = 0
        last_error: Exception | None = None

        while True:
            calls += 1
            try:
                data = self._attempt(provider, request_fn, validator)
            except Exception as exc:
                last_error = exc
                quota_related = is_quota_error(exc)
                logger.warning("AI request attempt {} failed with {}: {}", calls, provider.upper(), exc)

                if quota_related or opts.enable_fallback:
                    fallback = self.quota.best_available(None, exclude=tried)
                    if fallback:
                        logger.info("Switching from {} to fallback provider {}", provider.upper(), fallback.upper())
                        provider = fallback
                        tried.append(fallback)
                        continue

                if attempt >= opts.retry_attempts:
                    break
                if quota_related and not self.quota.can_use(provider):
                    break

                self._sleep(self.backoff(attempt))
                attempt += 1
                continue

            fallback_used = bool(preferred) and provider != preferred
            info = self.quota.usage_info(provider)
            logger.info(
                "AI request successful with {} ({}/{} used)", provider.upper(), info["usage"], info["limit"]
            )
            if fallback_used and self.bus is not None:
                self.bus.publish("provider_fallback", preferred=preferred, provider=provider, attempts=calls)
            return DispatchResult(
                data=data,
                provider_used=provider,
                fallback_used=fallback_used,
                attempts=calls,
            )

        logger.error("AI request failed after {} attempts across {}", calls, ", ".join(tried))
        return DispatchResult(
            error=AllProvidersFailed(last_error, tried),
            fallback_used=len(tried) > 1,
            attempts=calls,
        )

    def recommendations(
        self,
        symbols: list[str],
        options: DispatchOptions | None = None,
    ) -> DispatchResult[list[Recommendation]]:
        def request(provider: str) -> Any:
            client = self.clients.get(provider)
            if client is None:
                raise ProviderRequestFailed(f"No client configured for {provider.upper()}", provider=provider)
            return client.recommend(symbols)

        return self.dispatch(request, options, validator=parse_recommendations)

    def close(self) -> None:
        with self._lock:
            pending, self._in_flight = self._in_flight, set()
        for executor in pending:
            executor.shutdown(wait=False, cancel_futures=True)
