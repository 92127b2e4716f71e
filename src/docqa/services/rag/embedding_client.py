from __future__ import annotations

from typing import Protocol

import httpx

from docqa.errors import UpstreamError
from docqa.services.retry import is_transient_http_error


class EmbeddingClientError(UpstreamError):
    pass


class EmbeddingClient(Protocol):
    def embed_texts(self, texts: list[str]) -> list[list[float]]: ...


class OpenAICompatibleEmbeddingClient:
    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str = "",
        timeout_seconds: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else None
        try:
            response = httpx.post(
                f"{self._base_url}/embeddings",
                json={"model": self._model, "input": texts},
                headers=headers,
                timeout=self._timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise EmbeddingClientError(str(exc), transient=is_transient_http_error(exc)) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise EmbeddingClientError(
                f"Invalid embeddings payload: response is not JSON ({exc})",
                transient=False,
            ) from exc
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise EmbeddingClientError("Invalid embeddings payload: missing data", transient=False)

        vectors: list[list[float]] = []
        for item in data:
            embedding = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(embedding, list) or not embedding:
                raise EmbeddingClientError(
                    "Invalid embeddings payload: missing embedding vector",
                    transient=False,
                )
            try:
                vectors.append([float(value) for value in embedding])
            except (TypeError, ValueError) as exc:
                raise EmbeddingClientError(
                    "Invalid embeddings payload: non-numeric embedding value",
                    transient=False,
                ) from exc

        if len(vectors) != len(texts):
            raise EmbeddingClientError(
                f"Invalid embeddings payload: expected {len(texts)} vectors, got {len(vectors)}",
                transient=False,
            )

        return vectors
