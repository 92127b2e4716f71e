from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import httpx

from docqa.errors import UpstreamError
from docqa.services.retry import is_transient_http_error


class LLMClientError(UpstreamError):
    pass


@dataclass(frozen=True)
class ChatResult:
    answer: str
    model: str
    used_fallback: bool


class LLMClient(Protocol):
    def generate(self, messages: list[dict[str, str]]) -> ChatResult: ...


class OpenAICompatibleChatClient:
    def __init__(
        self,
        *,
        base_url: str,
        default_model: str,
        fallback_model: str,
        api_key: str = "",
        timeout_seconds: float = 30.0,
        temperature: float = 0.3,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._default_model = default_model
        self._fallback_model = fallback_model
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._temperature = temperature

    def generate(self, messages: list[dict[str, str]]) -> ChatResult:
        last_error: LLMClientError | None = None
        for model, used_fallback in self._model_candidates():
            try:
                content = self._chat_completion(model=model, messages=messages)
            except httpx.HTTPError as exc:
                last_error = LLMClientError(str(exc), transient=is_transient_http_error(exc))
                last_error.__cause__ = exc
                continue
            except ValueError as exc:
                last_error = LLMClientError(str(exc), transient=False)
                last_error.__cause__ = exc
                continue

            return ChatResult(answer=content, model=model, used_fallback=used_fallback)

        if last_error is not None:
            raise last_error
        raise LLMClientError("No model candidates configured", transient=False)

    def _model_candidates(self) -> list[tuple[str, bool]]:
        candidates: list[tuple[str, bool]] = [(self._default_model, False)]
        if self._fallback_model and self._fallback_model != self._default_model:
            candidates.append((self._fallback_model, True))
        return candidates

    def _chat_completion(self, *, model: str, messages: list[dict[str, str]]) -> str:
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else None
        response = httpx.post(
            f"{self._base_url}/chat/completions",
            json={
                "model": model,
                "messages": messages,
                "temperature": self._temperature,
            },
            headers=headers,
            timeout=self._timeout_seconds,
        )
        response.raise_for_status()

        payload = response.json()
        choices = payload.get("choices") if isinstance(payload, dict) else None
        if not isinstance(choices, list) or not choices:
            raise ValueError("Invalid chat completion payload: missing choices")

        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise ValueError("Invalid chat completion payload: missing assistant content")

        return content.strip()
