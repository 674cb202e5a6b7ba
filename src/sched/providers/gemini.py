from __future__ import annotations

import re
from typing import Any
from urllib.parse import quote

import httpx

from ..errors import ProviderError
from ..types import ProviderCompletion
from . import BaseProvider

__all__ = ["GeminiProvider"]

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
_RETRY_INFO = "type.googleapis.com/google.rpc.RetryInfo"
_QUOTA_FAILURE = "type.googleapis.com/google.rpc.QuotaFailure"
_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)s\s*$")


def _parse_duration_ms(raw: object) -> float | None:
    if not isinstance(raw, str):
        return None
    match = _DURATION.match(raw)
    if match is None:
        return None
    return float(match.group(1)) * 1000.0


class GeminiProvider(BaseProvider):
    def _build_request(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        base = (self.defn.base_url or DEFAULT_BASE_URL).strip().rstrip("/")
        url = f"{base}/models/{quote(model, safe='')}:generateContent"
        key = self._api_key(model, required=True)
        headers = {"Content-Type": "application/json", "x-goog-api-key": key or ""}
        generation_config: dict[str, Any] = {
            "temperature": self.defn.temperature,
            "maxOutputTokens": self.defn.max_tokens,
        }
        if self.defn.json_mode:
            generation_config["responseMimeType"] = "application/json"
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
            "generationConfig": generation_config,
        }
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        return url, headers, payload

    def _error_from_response(self, response: httpx.Response, model: str) -> ProviderError:
        error = super()._error_from_response(response, model)
        try:
            payload = response.json()
        except ValueError:
            return error
        if isinstance(payload, list) and payload:
            payload = payload[0]
        error_field = payload.get("error") if isinstance(payload, dict) else None
        details = error_field.get("details") if isinstance(error_field, dict) else None
        if not isinstance(details, list):
            return error
        for detail in details:
            if not isinstance(detail, dict):
                continue
            detail_type = detail.get("@type")
            if detail_type == _RETRY_INFO and error.retry_after_ms is None:
                error.retry_after_ms = _parse_duration_ms(detail.get("retryDelay"))
            elif detail_type == _QUOTA_FAILURE:
                violations = detail.get("violations")
                if not isinstance(violations, list):
                    continue
                for violation in violations:
                    quota_id = violation.get("quotaId") if isinstance(violation, dict) else None
                    if isinstance(quota_id, str) and "PerDay" in quota_id:
                        error.code = "quota_exhausted"
        return error

    async def send(self, model: str, system_prompt: str, user_prompt: str) -> ProviderCompletion:
        url, headers, payload = self._build_request(model, system_prompt, user_prompt)
        data = await self._post(url, model, headers=headers, payload=payload)
        candidates = data.get("candidates")
        parts: list[Any] = []
        if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
            content = candidates[0].get("content")
            if isinstance(content, dict) and isinstance(content.get("parts"), list):
                parts = content["parts"]
        text = "".join(
            part.get("text") or "" for part in parts if isinstance(part, dict)
        ).strip()
        if not text:
            raise self._empty_response(model)
        usage = data.get("usageMetadata")
        if not isinstance(usage, dict):
            usage = {}
        prompt_tokens = usage.get("promptTokenCount")
        completion_tokens = usage.get("candidatesTokenCount")
        return ProviderCompletion(
            content=text,
            model=data.get("modelVersion") or model,
            prompt_tokens=prompt_tokens if isinstance(prompt_tokens, int) else None,
            completion_tokens=completion_tokens if isinstance(completion_tokens, int) else None,
        )
