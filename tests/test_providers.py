from __future__ import annotations

import json

import pytest
import requests

from trade_autopilot import providers
from trade_autopilot.errors import ProviderQuotaError, ProviderRequestFailed
from trade_autopilot.providers import ChatCompletionsProvider, OllamaProvider


class FakeResponse:
    def __init__(self, status_code: int = 200, body: dict | None = None) -> None:
        self.status_code = status_code
        self._body = body or {}

    def json(self) -> dict:
        return self._body

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


def _provider(api_key: str = "sk-test") -> ChatCompletionsProvider:
    return ChatCompletionsProvider("groq", "https://api.groq.com/openai/v1/", api_key, "llama-3.1-8b-instant")


def test_chat_completions_parses_json_content(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict = {}
    content = {"recommendations": [{"symbol": "AAPL", "action": "BUY", "confidence": 90, "current_price": 50}]}

    def fake_post(url, headers=None, json=None, timeout=None):
        captured.update(url=url, headers=headers, body=json)
        return FakeResponse(body={"choices": [{"message": {"content": _dumps(content)}}]})

    monkeypatch.setattr(providers.requests, "post", fake_post)

    assert _provider().recommend(["AAPL"]) == content
    assert captured["url"] == "https://api.groq.com/openai/v1/chat/completions"
    assert captured["headers"]["Authorization"] == "Bearer sk-test"
    assert "AAPL" in captured["body"]["messages"][1]["content"]


def test_rate_limit_maps_to_quota_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(providers.requests, "post", lambda *args, **kwargs: FakeResponse(429))

    with pytest.raises(ProviderQuotaError):
        _provider().recommend(["AAPL"])


def test_server_error_and_bad_content(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(providers.requests, "post", lambda *args, **kwargs: FakeResponse(503))
    with pytest.raises(ProviderRequestFailed, match="HTTP 503"):
        _provider().recommend(["AAPL"])

    monkeypatch.setattr(
        providers.requests,
        "post",
        lambda *args, **kwargs: FakeResponse(body={"choices": [{"message": {"content": "not json"}}]}),
    )
    with pytest.raises(ProviderRequestFailed, match="non-JSON"):
        _provider().recommend(["AAPL"])


def test_missing_key_never_calls_network(monkeypatch: pytest.MonkeyPatch) -> None:
    def explode(*args, **kwargs):
        raise AssertionError("network call attempted")

    monkeypatch.setattr(providers.requests, "post", explode)

    with pytest.raises(ProviderRequestFailed, match="not configured"):
        _provider(api_key="  ").recommend(["AAPL"])


def test_ollama_reads_response_field(monkeypatch: pytest.MonkeyPatch) -> None:
    payload = {"recommendations": []}
    monkeypatch.setattr(
        providers.requests,
        "post",
        lambda *args, **kwargs: FakeResponse(body={"response": _dumps(payload)}),
    )

    assert OllamaProvider("ollama", "http://localhost:11434", "qwen2.5").recommend(["AAPL"]) == payload


def test_build_clients_skips_unkeyed_providers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(providers.settings, "gemini_api_key", "")
    monkeypatch.setattr(providers.settings, "groq_api_key", "gsk-test")
    monkeypatch.setattr(providers.settings, "openai_api_key", "")

    assert sorted(providers.build_provider_clients()) == ["groq", "ollama"]


def _dumps(value: dict) -> str:
    return json.dumps(value)
