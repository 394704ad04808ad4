from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from threading import Event, RLock
from typing import Callable

from mailrag.core.errors import BackendUnreachableError

LOGGER = logging.getLogger(__name__)


def normalize_model_name(name: str | None) -> str:
    trimmed = (name or "").strip()
    if not trimmed:
        return ""
    if ":" not in trimmed:
        return f"{trimmed}:latest"
    return trimmed


@dataclass
class ProbeResult:
    ok: bool
    base_url: str
    models: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class _Detection:
    done: Event = field(default_factory=Event)
    base_url: str | None = None
    error: BackendUnreachableError | None = None


class BackendResolver:
    """Finds a reachable Ollama endpoint and caches it for a short TTL.

    One instance is created per process and shared by every request. The
    resolved URL is re-verified lazily once the TTL has passed; a failed
    re-verification falls back to probing every candidate again.
    """

    def __init__(
        self,
        candidate_urls: list[str] | None = None,
        *,
        probe_timeout_seconds: float | None = None,
        probe_retries: int | None = None,
        probe_backoff_seconds: float | None = None,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if candidate_urls is None or probe_timeout_seconds is None or probe_retries is None:
            from mailrag.core.config import settings

            candidate_urls = candidate_urls or settings.candidate_urls
            probe_timeout_seconds = probe_timeout_seconds or settings.HEALTH_TIMEOUT_SECONDS
            probe_retries = probe_retries or settings.BACKEND_PROBE_RETRIES
            probe_backoff_seconds = (
                settings.BACKEND_PROBE_BACKOFF_SECONDS if probe_backoff_seconds is None else probe_backoff_seconds
            )
            ttl_seconds = settings.BACKEND_HEALTH_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self.candidate_urls = _dedupe([str(u).rstrip("/") for u in candidate_urls if u])
        self.probe_timeout_seconds = float(probe_timeout_seconds)
        self.probe_retries = max(1, int(probe_retries))
        self.probe_backoff_seconds = float(probe_backoff_seconds or 0.0)
        self.ttl_seconds = float(ttl_seconds if ttl_seconds is not None else 60)
        self._clock = clock
        self._sleep = sleep
        self._lock = RLock()
        self._base_url: str | None = None
        self._models: list[str] = []
        self._checked_at: float | None = None
        self._closed = False
        self._detection: _Detection | None = None

    @property
    def base_url(self) -> str | None:
        return self._base_url

    @property
    def models(self) -> list[str]:
        return list(self._models)

    def init(self) -> str | None:
        with self._lock:
            self._closed = False
        try:
            return self.resolve()
        except BackendUnreachableError:
            return None

    def invalidate(self) -> None:
        with self._lock:
            self._base_url = None
            self._models = []
            self._checked_at = None

    def shutdown(self) -> None:
        with self._lock:
            self.invalidate()
            self._closed = True

    def probe(self, base_url: str, attempts: int | None = None) -> ProbeResult:
        import httpx

        total = attempts or self.probe_retries
        last_error: str | None = None
        for attempt in range(total):
            try:
                with httpx.Client(timeout=self.probe_timeout_seconds) as client:
                    response = client.get(f"{base_url}/api/tags")
                    response.raise_for_status()
                    body = response.json()
                models = [str(m.get("name") if isinstance(m, dict) else m) for m in (body.get("models") or [])]
                return ProbeResult(ok=True, base_url=base_url, models=models)
            except (httpx.HTTPError, ValueError) as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                if attempt < total - 1:
                    self._sleep(self.probe_backoff_seconds * (attempt + 1))
        return ProbeResult(ok=False, base_url=base_url, error=last_error)

    def resolve(self) -> str:
        with self._lock:
            if self._closed:
                raise BackendUnreachableError(message="Backend resolver has been shut down")
            fresh = self._checked_at is not None and self._clock() - self._checked_at < self.ttl_seconds
            if self._base_url and fresh:
                return self._base_url
            detection = self._detection
            leader = detection is None
            if leader:
                detection = self._detection = _Detection()
            stale_url = self._base_url

        # probes run without the lock; concurrent callers wait for the one in flight
        if not leader:
            detection.done.wait()
            if detection.base_url:
                return detection.base_url
            raise detection.error or BackendUnreachableError(message="Backend detection failed")

        try:
            detection.base_url = self._refresh(stale_url)
            return detection.base_url
        except BackendUnreachableError as exc:
            detection.error = exc
            raise
        finally:
            with self._lock:
                self._detection = None
            detection.done.set()

    def _refresh(self, stale_url: str | None) -> str:
        if stale_url:
            quick = self.probe(stale_url, attempts=1)
            if quick.ok:
                self._store(stale_url, quick.models)
                return stale_url
            LOGGER.warning("backend_reverify_failed", extra={"base_url": stale_url, "error": quick.error})
            self.invalidate()
        return self._detect()

    def _store(self, base_url: str, models: list[str]) -> None:
        with self._lock:
            self._base_url = base_url
            self._models = models
            self._checked_at = self._clock()

    def _detect(self) -> str:
        errors: dict[str, str | None] = {}
        for url in self.candidate_urls:
            result = self.probe(url)
            if result.ok:
                self._store(url, result.models)
                LOGGER.info("backend_resolved", extra={"base_url": url, "models": result.models})
                return url
            errors[url] = result.error
        LOGGER.warning("backend_unreachable", extra={"candidates": self.candidate_urls, "errors": errors})
        raise BackendUnreachableError(message=f"No reachable backend among {', '.join(self.candidate_urls)}")

    def is_available(self) -> bool:
        try:
            self.resolve()
        except BackendUnreachableError:
            return False
        return True

    def debug_info(self) -> dict:
        try:
            url = self.resolve()
        except BackendUnreachableError as exc:
            return {"ok": False, "working_base_url": None, "models": [], "error": str(exc)}
        return {"ok": True, "working_base_url": url, "models": self.models}


def _dedupe(values: list[str]) -> list[str]:
    seen: list[str] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen
