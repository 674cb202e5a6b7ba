from __future__ import annotations

from typing import Any

from ..types import ProviderCompletion
from . import BaseProvider

DEFAULT_BASE_URL = "https://api.openai.com/v1"


class OpenAICompatProvider(BaseProvider):
    """Chat-completions adapter for OpenAI and compatible hosts (NVIDIA, vLLM, ...)."""

    def _build_request(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        base = (self.defn.base_url or DEFAULT_BASE_URL).strip().rstrip("/")
        lowered = base.lower()
        if lowered.endswith("/chat/completions"):
            url = base
        elif lowered.endswith("/chat"):
            url = f"{base}/completions"
        else:
            url = f"{base}/chat/completions"
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        key = self._api_key(model, required=False)
        if key:
            headers["Authorization"] = f"Bearer {key}"
        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": self.defn.temperature,
            "max_tokens": self.defn.max_tokens,
            "stream": False,
        }
        if self.defn.json_mode:
            payload["response_format"] = {"type": "json_object"}
        return url, headers, payload

    async def send(self, model: str, system_prompt: str, user_prompt: str) -> ProviderCompletion:
        url, headers, payload = self._build_request(model, system_prompt, user_prompt)
        data = await self._post(url, model, headers=headers, payload=payload)
        choices = data.get("choices")
        content: Any = None
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message")
            if isinstance(message, dict):
                content = message.get("content")
        text = content.strip() if isinstance(content, str) else ""
        if not text:
            raise self._empty_response(model)
        usage = data.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        prompt_tokens = usage.get("prompt_tokens")
        completion_tokens = usage.get("completion_tokens")
        return ProviderCompletion(
            content=text,
            model=data.get("model") or model,
            prompt_tokens=prompt_tokens if isinstance(prompt_tokens, int) else None,
            completion_tokens=completion_tokens if isinstance(completion_tokens, int) else None,
        )
