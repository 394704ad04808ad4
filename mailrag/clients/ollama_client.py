from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable

from cachetools import TTLCache

from mailrag.clients.backend_resolver import BackendResolver, normalize_model_name
from mailrag.core.errors import (
    BackendUnreachableError,
    GenerationTimeoutError,
    MalformedResponseError,
    ModelNotFoundError,
    RagCoreError,
)
from mailrag.core.logging import ErrorLogSuppressor

LOGGER = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n\n[Context truncated for performance]"
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def embedding_cache_key(text: str) -> str:
    if len(text) <= 100:
        return text
    return f"{text[:50]}{_base36(len(text))}{text[-50:]}"


def truncate_prompt(prompt: str, max_chars: int) -> str:
    if len(prompt) <= max_chars:
        return prompt
    return prompt[:max_chars] + TRUNCATION_MARKER


def is_fallback_eligible(exc: BaseException) -> bool:
    return isinstance(exc, (GenerationTimeoutError, ModelNotFoundError))


@dataclass(frozen=True)
class GenerationStep:
    model: str
    predicate: Callable[[BaseException], bool] | None = None


def build_generation_policy(primary_model: str, fallback_model: str | None) -> list[GenerationStep]:
    primary = normalize_model_name(primary_model)
    steps = [GenerationStep(model=primary)]
    fallback = normalize_model_name(fallback_model)
    if fallback and fallback != primary:
        steps.append(GenerationStep(model=fallback, predicate=is_fallback_eligible))
    return steps


class OllamaClient:
    def __init__(
        self,
        resolver: BackendResolver | None = None,
        *,
        embed_model: str | None = None,
        chat_model: str | None = None,
        fallback_model: str | None = None,
        embedding_dim: int | None = None,
        embed_timeout_seconds: float | None = None,
        generate_timeout_seconds: float | None = None,
        max_input_chars: int | None = None,
        max_prompt_chars: int | None = None,
        num_predict: int | None = None,
        temperature: float | None = None,
        cache_ttl_seconds: float | None = None,
        cache_max_entries: int | None = None,
        suppression_seconds: float | None = None,
    ):
        from mailrag.core.config import settings

        self.resolver = resolver or BackendResolver()
        self.embed_model = normalize_model_name(embed_model or settings.OLLAMA_EMBED_MODEL)
        self.policy = build_generation_policy(
            chat_model or settings.OLLAMA_CHAT_MODEL,
            fallback_model if fallback_model is not None else settings.OLLAMA_FALLBACK_MODEL,
        )
        self.embedding_dim = int(embedding_dim or settings.EMBEDDING_DIM)
        self.embed_timeout_seconds = float(embed_timeout_seconds or settings.EMBED_TIMEOUT_SECONDS)
        self.generate_timeout_seconds = float(generate_timeout_seconds or settings.GENERATE_TIMEOUT_SECONDS)
        self.max_input_chars = int(max_input_chars or settings.EMBED_MAX_INPUT_CHARS)
        self.max_prompt_chars = int(max_prompt_chars or settings.LLM_MAX_PROMPT_CHARS)
        self.num_predict = int(num_predict or settings.LLM_NUM_PREDICT)
        self.temperature = float(settings.LLM_TEMPERATURE if temperature is None else temperature)
        self._cache: TTLCache[str, list[float]] = TTLCache(
            maxsize=int(cache_max_entries or settings.EMBED_CACHE_MAX_ENTRIES),
            ttl=float(cache_ttl_seconds or settings.EMBED_CACHE_TTL_SECONDS),
        )
        self._cache_lock = Lock()
        self.suppressor = ErrorLogSuppressor(suppression_seconds or settings.ERROR_LOG_SUPPRESSION_SECONDS)

    @property
    def chat_model(self) -> str:
        return self.policy[0].model

    def is_available(self) -> bool:
        return self.resolver.is_available()

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    def embed(self, text: str, *, log_key: str | None = None) -> list[float] | None:
        """Embed ``text`` or return None; callers degrade to non-semantic paths on None."""
        if not text or not text.strip():
            return None
        prompt = text[: self.max_input_chars]
        key = embedding_cache_key(prompt)
        with self._cache_lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        suppression_key = f"embedding-{log_key or 'query'}"
        import httpx

        try:
            base_url = self.resolver.resolve()
            with httpx.Client(timeout=self.embed_timeout_seconds) as client:
                response = client.post(f"{base_url}/api/embeddings", json={"model": self.embed_model, "prompt": prompt})
                response.raise_for_status()
                body = response.json()
        except BackendUnreachableError as exc:
            self._log_failure(suppression_key, "embedding_backend_unreachable", exc)
            return None
        except httpx.TimeoutException as exc:
            self._log_failure(suppression_key, "embedding_timeout", exc)
            return None
        except httpx.TransportError as exc:
            self.resolver.invalidate()
            self._log_failure(suppression_key, "embedding_request_failed", exc)
            return None
        except (httpx.HTTPError, ValueError) as exc:
            self._log_failure(suppression_key, "embedding_request_failed", exc)
            return None

        embedding = body.get("embedding") if isinstance(body, dict) else None
        if not isinstance(embedding, list) or len(embedding) != self.embedding_dim:
            self._log_failure(
                suppression_key,
                "embedding_dimension_mismatch",
                MalformedResponseError(message=f"expected {self.embedding_dim} floats, got {len(embedding or [])}"),
            )
            return None
        try:
            vector = [float(x) for x in embedding]
        except (TypeError, ValueError) as exc:
            self._log_failure(
                suppression_key,
                "embedding_malformed",
                MalformedResponseError(message=f"non-numeric embedding value: {exc}"),
            )
            return None
        with self._cache_lock:
            self._cache[key] = vector
        return vector

    def generate(self, prompt: str, system_prompt: str | None = None) -> str:
        bounded_prompt = truncate_prompt(prompt, self.max_prompt_chars)
        last_error: RagCoreError | None = None
        for step in self.policy:
            if last_error is not None and (step.predicate is None or not step.predicate(last_error)):
                break
            try:
                started = time.perf_counter()
                answer = self._chat(step.model, bounded_prompt, system_prompt)
                LOGGER.info(
                    "generation_completed",
                    extra={"model": step.model, "took_ms": int((time.perf_counter() - started) * 1000)},
                )
                return answer
            except RagCoreError as exc:
                last_error = exc
                self._log_failure(f"generate-{step.model}", "generation_failed", exc)
        if last_error is None:
            raise RagCoreError("GENERATION_FAILED", "no generation model configured")
        raise last_error

    def _chat(self, model: str, prompt: str, system_prompt: str | None) -> str:
        import httpx

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        payload = {
            "model": model,
            "messages": messages,
            "stream": False,
            "options": {"num_predict": self.num_predict, "temperature": self.temperature},
        }
        base_url = self.resolver.resolve()
        try:
            with httpx.Client(timeout=self.generate_timeout_seconds) as client:
                response = client.post(f"{base_url}/api/chat", json=payload)
                if response.status_code == 404:
                    raise ModelNotFoundError(message=f"model '{model}' not found")
                response.raise_for_status()
                body = response.json()
        except httpx.TimeoutException as exc:
            raise GenerationTimeoutError(message=f"generation with {model} timed out") from exc
        except httpx.TransportError as exc:
            self.resolver.invalidate()
            raise BackendUnreachableError(message=str(exc)) from exc
        except httpx.HTTPStatusError as exc:
            detail = exc.response.text if exc.response is not None else ""
            if "not found" in detail.lower() and "model" in detail.lower():
                raise ModelNotFoundError(message=detail) from exc
            raise RagCoreError("GENERATION_FAILED", f"HTTP {exc.response.status_code}") from exc
        except ValueError as exc:
            raise MalformedResponseError(message="backend returned invalid JSON") from exc

        message = body.get("message") if isinstance(body, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise MalformedResponseError(message="backend response has no message content")
        return content.strip()

    def _log_failure(self, key: str, event: str, exc: BaseException) -> None:
        if self.suppressor.should_log(key):
            LOGGER.warning(event, extra={"suppression_key": key, "error": str(exc), "error_type": type(exc).__name__})

    def debug_info(self) -> dict:
        info = self.resolver.debug_info()
        info["embed_model"] = self.embed_model
        info["chat_models"] = [step.model for step in self.policy]
        return info

    def shutdown(self) -> None:
        self.clear_cache()
        self.suppressor.clear()
        self.resolver.shutdown()
