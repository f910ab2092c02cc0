from __future__ import annotations

import json
import time
from dataclasses import dataclass

import requests
from loguru import logger

from .errors import ProviderQuotaError, ProviderRequestFailed
from .settings import settings


RECOMMENDATION_SCHEMA_HINT = (
    'Return ONLY strict JSON: {"recommendations": [{"symbol": "TICKER", '
    '"action": "BUY"|"SELL"|"HOLD", "confidence": 0-100, "current_price": number, '
    '"target_price": number, "risk_level": "LOW"|"MEDIUM"|"HIGH", '
    '"reasoning": "1-2 sentences"}]}'
)


def build_recommendation_prompt(symbols: list[str]) -> str:
    return (
        "You are an equity analyst producing short-horizon trade recommendations. "
        "For each ticker below give one recommendation using the latest price you know.\n\n"
        f"Tickers: {', '.join(symbols)}\n\n"
        f"{RECOMMENDATION_SCHEMA_HINT}"
    )


def _raise_for_status(response: requests.Response, provider: str) -> None:
    if response.status_code == 429:
        raise ProviderQuotaError(f"{provider.upper()} rate limited (HTTP 429)", provider=provider)
    try:
        response.raise_for_status()
    except requests.HTTPError as exc:
        raise ProviderRequestFailed(f"{provider.upper()} HTTP {response.status_code}", provider=provider) from exc


def _loads_json_text(text: str, provider: str) -> dict:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ProviderRequestFailed(f"{provider.upper()} returned non-JSON content", provider=provider) from exc
    if not isinstance(payload, (dict, list)):
        raise ProviderRequestFailed(f"{provider.upper()} returned an unexpected JSON type", provider=provider)
    return payload


@dataclass
class ChatCompletionsProvider:
    """OpenAI-compatible chat-completions endpoint (OpenAI, Groq, Gemini)."""

    name: str
    base_url: str
    api_key: str
    model: str
    timeout_seconds: float = 10.0
    max_output_tokens: int = 1200

    def is_configured(self) -> bool:
        return bool(self.api_key.strip())

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _extract_text_response(self, payload: dict) -> str:
        choices = payload.get("choices", [])
        if choices:
            message = choices[0].get("message", {})
            content = message.get("content", "")
            if isinstance(content, str):
                return content
            if isinstance(content, list):
                chunks: list[str] = []
                for part in content:
                    if isinstance(part, dict) and part.get("type") == "text":
                        chunks.append(str(part.get("text", "")))
                return "\n".join(chunks)
        return "{}"

    def recommend(self, symbols: list[str]) -> dict:
        if not self.is_configured():
            raise ProviderRequestFailed(f"{self.name.upper()} API key is not configured", provider=self.name)

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": "Return only strict JSON."},
                {"role": "user", "content": build_recommendation_prompt(symbols)},
            ],
            "response_format": {"type": "json_object"},
            "temperature": 0.2,
            "max_tokens": self.max_output_tokens,
        }

        start = time.perf_counter()
        response = requests.post(
            f"{self.base_url.rstrip('/')}/chat/completions",
            headers=self._headers(),
            json=payload,
            timeout=self.timeout_seconds,
        )
        _raise_for_status(response, self.name)
        logger.debug("{} responded in {:.2f}s", self.name.upper(), time.perf_counter() - start)
        return _loads_json_text(self._extract_text_response(response.json() or {}), self.name)


@dataclass
class OllamaProvider:
    name: str
    base_url: str
    model: str
    timeout_seconds: float = 10.0

    def recommend(self, symbols: list[str]) -> dict:
        payload = {
            "model": self.model,
            "prompt": build_recommendation_prompt(symbols),
            "format": "json",
            "stream": False,
            "options": {"temperature": 0.2},
        }
        response = requests.post(f"{self.base_url}/api/generate", json=payload, timeout=self.timeout_seconds)
        _raise_for_status(response, self.name)
        body = response.json() or {}
        return _loads_json_text(str(body.get("response", "{}")), self.name)



def build_provider_clients() -> dict[str, ChatCompletionsProvider | OllamaProvider]:
    """Clients for every keyed hosted provider plus the local Ollama fallback."""
    timeout = settings.provider_timeout_seconds
    clients: dict[str, ChatCompletionsProvider | OllamaProvider] = {}
    candidates = {
        "gemini": (settings.gemini_base_url, settings.gemini_api_key, settings.gemini_model),
        "groq": (settings.groq_base_url, settings.groq_api_key, settings.groq_model),
        "openai": (settings.openai_base_url, settings.openai_api_key, settings.openai_model),
    }
    for name, (base_url, api_key, model) in candidates.items():
        client = ChatCompletionsProvider(
            name=name,
            base_url=base_url,
            api_key=api_key,
            model=model,
            timeout_seconds=timeout,
            max_output_tokens=settings.provider_max_output_tokens,
        )
        if client.is_configured():
            clients[name] = client

    clients["ollama"] = OllamaProvider("ollama", settings.ollama_base_url, settings.ollama_model, timeout)
    logger.info("AI providers configured: {}", ", ".join(clients))
    return clients
