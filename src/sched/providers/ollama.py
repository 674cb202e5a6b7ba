from __future__ import annotations

from typing import Any

from ..types import ProviderCompletion
from . import BaseProvider

__all__ = ["OllamaProvider"]


class OllamaProvider(BaseProvider):
    async def send(self, model: str, system_prompt: str, user_prompt: str) -> ProviderCompletion:
        url = f"{self.defn.base_url.rstrip('/')}/api/chat"
        headers: dict[str, str] = {"Content-Type": "application/json"}
        key = self._api_key(model, required=False)
        if key:
            headers["Authorization"] = f"Bearer {key}"
        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})
        options: dict[str, Any] = {
            "temperature": self.defn.temperature,
            "num_predict": self.defn.max_tokens,
        }
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": False,
            "options": options,
        }
        if self.defn.json_mode:
            payload["format"] = "json"
        data = await self._post(url, model, headers=headers, payload=payload)
        # Ollama returns {"message":{"content":...}, "done":true, ...}
        message = data.get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        text = content.strip() if isinstance(content, str) else ""
        if not text:
            raise self._empty_response(model)
        prompt_eval = data.get("prompt_eval_count")
        eval_count = data.get("eval_count")
        return ProviderCompletion(
            content=text,
            model=data.get("model") or model,
            prompt_tokens=prompt_eval if isinstance(prompt_eval, int) else None,
            completion_tokens=eval_count if isinstance(eval_count, int) else None,
        )
