import httpx
import pytest

from docqa.llm import LLMClientError, OpenAICompatibleChatClient

MESSAGES = [
    {"role": "system", "content": "Answer briefly."},
    {"role": "user", "content": "What is covered?"},
]


class _FakeResponse:
    def __init__(self, payload: object, *, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            request = httpx.Request("POST", "http://localhost:11434/v1/chat/completions")
            response = httpx.Response(self.status_code, request=request)
            raise httpx.HTTPStatusError("request failed", request=request, response=response)

    def json(self) -> object:
        return self._payload


def _completion(content: str) -> dict[str, object]:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def _client(**overrides: object) -> OpenAICompatibleChatClient:
    options: dict[str, object] = {
        "base_url": "http://localhost:11434/v1",
        "default_model": "primary",
        "fallback_model": "backup",
        "timeout_seconds": 9,
    }
    options.update(overrides)
    return OpenAICompatibleChatClient(**options)


def test_chat_client_posts_messages_to_default_model(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_post(url: str, *, json: dict[str, object], headers: dict[str, str] | None, timeout: float) -> _FakeResponse:
        captured.update(url=url, json=json, headers=headers, timeout=timeout)
        return _FakeResponse(_completion("  Section 2 covers safety. "))

    monkeypatch.setattr("docqa.llm.httpx.post", fake_post)

    result = _client().generate(MESSAGES)

    assert result.answer == "Section 2 covers safety."
    assert result.model == "primary"
    assert result.used_fallback is False
    assert captured["url"] == "http://localhost:11434/v1/chat/completions"
    assert captured["json"] == {"model": "primary", "messages": MESSAGES, "temperature": 0.3}
    assert captured["timeout"] == 9


def test_chat_client_falls_back_to_second_model(monkeypatch: pytest.MonkeyPatch) -> None:
    models: list[str] = []

    def fake_post(url: str, *, json: dict[str, object], headers: dict[str, str] | None, timeout: float) -> _FakeResponse:
        models.append(str(json["model"]))
        if json["model"] == "primary":
            return _FakeResponse({}, status_code=500)
        return _FakeResponse(_completion("from backup"))

    monkeypatch.setattr("docqa.llm.httpx.post", fake_post)

    result = _client().generate(MESSAGES)

    assert models == ["primary", "backup"]
    assert result.answer == "from backup"
    assert result.used_fallback is True


def test_chat_client_raises_last_error_when_all_models_fail(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_post(url: str, *, json: dict[str, object], headers: dict[str, str] | None, timeout: float) -> _FakeResponse:
        if json["model"] == "primary":
            return _FakeResponse({}, status_code=503)
        return _FakeResponse({"choices": []})

    monkeypatch.setattr("docqa.llm.httpx.post", fake_post)

    with pytest.raises(LLMClientError, match="missing choices") as error:
        _client().generate(MESSAGES)
    assert error.value.transient is False


def test_chat_client_skips_fallback_equal_to_default(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[str] = []

    def fake_post(url: str, *, json: dict[str, object], headers: dict[str, str] | None, timeout: float) -> _FakeResponse:
        calls.append(str(json["model"]))
        raise httpx.ConnectError("connection refused", request=httpx.Request("POST", url))

    monkeypatch.setattr("docqa.llm.httpx.post", fake_post)

    with pytest.raises(LLMClientError) as error:
        _client(fallback_model="primary").generate(MESSAGES)
    assert calls == ["primary"]
    assert error.value.transient is True
