"""Error taxonomy for the autopilot engine.

Upstream failures (quota, provider) are retried by the dispatcher; policy
violations (risk, limits, funds) are recovered locally by skipping; only
repeated unrecoverable failures push the orchestrator into ERROR.
"""

from __future__ import annotations


class AutopilotError(RuntimeError):
    pass


class QuotaExhausted(AutopilotError):
    """Every provider is capped for the current window."""


class ProviderRequestFailed(AutopilotError):
    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class ProviderQuotaError(ProviderRequestFailed):
    """Upstream rejected the call for quota/rate reasons (e.g. HTTP 429)."""


class AllProvidersFailed(AutopilotError):
    def __init__(self, last_error: BaseException | None, attempted: list[str] | None = None) -> None:
        detail = f"{last_error}" if last_error else "no provider produced a result"
        super().__init__(f"All providers failed: {detail}")
        self.last_error = last_error
        self.attempted = list(attempted or [])


class InsufficientFunds(AutopilotError):
    pass


class InsufficientShares(AutopilotError):
    pass


class RiskLimitExceeded(AutopilotError):
    pass


class MarketClosed(AutopilotError):
    pass


class DrawdownBreached(AutopilotError):
    pass


class PersistenceFailure(AutopilotError):
    pass


class DataUnavailable(AutopilotError):
    pass


class ConfigError(AutopilotError):
    pass


class InvalidTransition(AutopilotError):
    pass
