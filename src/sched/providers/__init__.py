import math
import os
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict

import httpx

from ..errors import ConfigurationFailure, ProviderError, TransientFailure
from ..router import ProviderDef, normalize_provider_name
from ..types import ProviderCompletion


def parse_retry_after_ms(value: str | None) -> float | None:
    """Retry-After as delta seconds (possibly fractional) or an HTTP date."""
    if not value:
        return None
    text = value.strip()
    if not text:
        return None
    try:
        seconds = float(text)
    except ValueError:
        seconds = None
    if seconds is not None:
        if math.isnan(seconds) or math.isinf(seconds):
            return None
        return max(0.0, seconds * 1000.0)
    try:
        parsed = parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    delta = (parsed - datetime.now(timezone.utc)).total_seconds()
    return max(0.0, delta * 1000.0)


def _error_payload(response: httpx.Response) -> dict[str, Any] | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, list) and payload and isinstance(payload[0], dict):
        payload = payload[0]
    return payload if isinstance(payload, dict) else None


def provider_error_from_response(
    response: httpx.Response,
    *,
    provider: str,
    model: str,
) -> ProviderError:
    message: str | None = None
    code: str | None = None
    payload = _error_payload(response)
    if payload is not None:
        error_field = payload.get("error")
        if isinstance(error_field, dict):
            error_message = error_field.get("message")
            if isinstance(error_message, str) and error_message:
                message = error_message
            for candidate in (error_field.get("code"), error_field.get("type"), error_field.get("status")):
                if isinstance(candidate, str) and candidate:
                    code = candidate
                    break
        elif isinstance(error_field, str) and error_field:
            message = error_field
        if message is None:
            nested_message = payload.get("message")
            if isinstance(nested_message, str) and nested_message:
                message = nested_message
    if message is None:
        text = response.text
        if text:
            message = text
    if message is None:
        message = response.reason_phrase or f"{provider} HTTP {response.status_code}"
    return ProviderError(
        message,
        status=response.status_code,
        retry_after_ms=parse_retry_after_ms(response.headers.get("Retry-After")),
        code=code,
        provider=provider,
        model=model,
    )


class BaseProvider:
    """One upstream endpoint behind the ``send`` call boundary."""

    def __init__(self, defn: ProviderDef):
        self.defn = defn
        self.name = defn.name

    async def send(self, model: str, system_prompt: str, user_prompt: str) -> ProviderCompletion:
        raise NotImplementedError

    def _api_key(self, model: str, *, required: bool) -> str | None:
        auth_env = self.defn.auth_env
        if not auth_env:
            if required:
                raise ConfigurationFailure(
                    f"{self.name} API key missing (no auth_env configured)",
                    provider=self.name,
                    model=model,
                )
            return None
        key = os.environ.get(auth_env, "").strip()
        if not key:
            if not required:
                return None
            raise ConfigurationFailure(
                f"{self.name} API key missing (set {auth_env})",
                provider=self.name,
                model=model,
            )
        return key

    def _error_from_response(self, response: httpx.Response, model: str) -> ProviderError:
        return provider_error_from_response(response, provider=self.name, model=model)

    async def _post(
        self,
        url: str,
        model: str,
        *,
        headers: dict[str, str],
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.defn.timeout_s) as client:
                response = await client.post(url, headers=headers, json=payload)
        except httpx.TimeoutException as exc:
            raise TransientFailure(
                f"{self.name} request timeout for model {model}: {exc}",
                provider=self.name,
                model=model,
            ) from exc
        except httpx.TransportError as exc:
            raise TransientFailure(
                f"{self.name} network error for model {model}: {exc}",
                provider=self.name,
                model=model,
            ) from exc
        if response.status_code >= 400:
            raise self._error_from_response(response, model)
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(
                f"{self.name} returned a non-JSON body for model {model}",
                status=response.status_code,
                provider=self.name,
                model=model,
            ) from exc
        return data if isinstance(data, dict) else {}

    def _empty_response(self, model: str) -> ProviderError:
        return ProviderError(f"{self.name} empty response for model {model}", provider=self.name, model=model)


class DummyProvider(BaseProvider):
    async def send(self, model: str, system_prompt: str, user_prompt: str) -> ProviderCompletion:
        # simple echo-ish behavior for local runs and tests
        _ = system_prompt
        return ProviderCompletion(
            content=f"dummy:{user_prompt or 'ping'}",
            model=model,
            prompt_tokens=None,
            completion_tokens=None,
        )


from .gemini import GeminiProvider
from .ollama import OllamaProvider
from .openai import OpenAICompatProvider


class ProviderRegistry:
    _PROVIDER_FACTORIES: dict[str, type[BaseProvider]] = {
        "openai": OpenAICompatProvider,
        "gemini": GeminiProvider,
        "ollama": OllamaProvider,
        "dummy": DummyProvider,
    }

    def __init__(self, providers: Dict[str, ProviderDef]):
        self.providers: dict[str, BaseProvider] = {}
        for name, d in providers.items():
            provider_type_raw = d.type
            provider_type = provider_type_raw if provider_type_raw is not None else "openai"

            if isinstance(provider_type_raw, str) and not provider_type_raw.strip():
                raise ValueError(
                    f"Unknown provider type '<missing>' for provider '{name}'"
                )

            factory = self._PROVIDER_FACTORIES.get(provider_type)
            if factory is None:
                raise ValueError(
                    f"Unknown provider type '{provider_type}' for provider '{name}'"
                )
            self.providers[normalize_provider_name(name)] = factory(d)

    def get(self, name: str) -> BaseProvider:
        return self.providers[normalize_provider_name(name)]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and normalize_provider_name(name) in self.providers


__all__ = [
    "BaseProvider",
    "DummyProvider",
    "GeminiProvider",
    "OllamaProvider",
    "OpenAICompatProvider",
    "ProviderRegistry",
    "parse_retry_after_ms",
    "provider_error_from_response",
]
