import httpx
import pytest

from mailrag.clients.ollama_client import (
    TRUNCATION_MARKER,
    OllamaClient,
    build_generation_policy,
    embedding_cache_key,
    truncate_prompt,
)
from mailrag.core.errors import BackendUnreachableError, GenerationTimeoutError, MalformedResponseError, RagCoreError


class StaticResolver:
    def __init__(self, url="http://ollama.local"):
        self.url = url
        self.invalidated = 0

    def resolve(self):
        if self.url is None:
            raise BackendUnreachableError(message="down")
        return self.url

    def invalidate(self):
        self.invalidated += 1

    def is_available(self):
        return self.url is not None

    def debug_info(self):
        return {"ok": self.url is not None, "working_base_url": self.url}

    def shutdown(self):
        return None


class DummyResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code
        self.text = ""

    def raise_for_status(self):
        return None

    def json(self):
        return self.payload


class DummyClient:
    def __init__(self, handler):
        self.handler = handler
        self.requests = []

    def __enter__(self):
        return self

    def __exit__(self, *_args):
        return False

    def post(self, endpoint, json):
        self.requests.append((endpoint, json))
        return self.handler(endpoint, json)


def _install(monkeypatch, handler):
    recorder = DummyClient(handler)
    monkeypatch.setattr("httpx.Client", lambda *_args, **_kwargs: recorder)
    return recorder


def _client(resolver=None, **overrides):
    options = {
        "embed_model": "nomic-embed-text",
        "chat_model": "llama3",
        "fallback_model": "phi",
        "embedding_dim": 3,
        "max_prompt_chars": 2200,
        "suppression_seconds": 300,
    }
    options.update(overrides)
    return OllamaClient(resolver or StaticResolver(), **options)


def test_embed_returns_vector_and_caches(monkeypatch):
    recorder = _install(monkeypatch, lambda _endpoint, _payload: DummyResponse({"embedding": [0.1, 0.2, 0.3]}))
    client = _client()

    assert client.embed("hello world") == [0.1, 0.2, 0.3]
    assert client.embed("hello world") == [0.1, 0.2, 0.3]

    assert len(recorder.requests) == 1
    endpoint, payload = recorder.requests[0]
    assert endpoint == "http://ollama.local/api/embeddings"
    assert payload == {"model": "nomic-embed-text:latest", "prompt": "hello world"}


def test_embed_rejects_wrong_dimension(monkeypatch):
    _install(monkeypatch, lambda _endpoint, _payload: DummyResponse({"embedding": [0.1, 0.2]}))

    assert _client().embed("hello world") is None


def test_embed_rejects_non_numeric_values(monkeypatch):
    _install(monkeypatch, lambda _endpoint, _payload: DummyResponse({"embedding": [0.1, None, 0.3]}))
    client = _client()

    assert client.embed("hello world") is None
    assert client.embed("hello world") is None


def test_generate_without_models_raises_generation_failed():
    client = _client()
    client.policy = []

    with pytest.raises(RagCoreError) as exc:
        client.generate("question")
    assert exc.value.error_code == "GENERATION_FAILED"


def test_embed_returns_none_when_backend_unreachable():
    assert _client(StaticResolver(url=None)).embed("hello world") is None


def test_embed_transport_error_invalidates_resolver(monkeypatch):
    def _refuse(_endpoint, _payload):
        raise httpx.ConnectError("refused")

    _install(monkeypatch, _refuse)
    resolver = StaticResolver()

    assert _client(resolver).embed("hello world") is None
    assert resolver.invalidated == 1


def test_embed_skips_blank_text(monkeypatch):
    recorder = _install(monkeypatch, lambda _endpoint, _payload: DummyResponse({"embedding": [0.1, 0.2, 0.3]}))

    assert _client().embed("   ") is None
    assert recorder.requests == []


def test_embedding_cache_key_compacts_long_text():
    short = "a" * 100
    long = "b" * 50 + "x" * 500 + "c" * 50
    assert embedding_cache_key(short) == short
    assert embedding_cache_key(long) == "b" * 50 + "go" + "c" * 50


def test_truncate_prompt_appends_marker():
    assert truncate_prompt("short", 10) == "short"
    assert truncate_prompt("x" * 20, 10) == "x" * 10 + TRUNCATION_MARKER


def test_generation_policy_skips_identical_fallback():
    assert [step.model for step in build_generation_policy("phi", "phi")] == ["phi:latest"]
    steps = build_generation_policy("llama3", "phi")
    assert [step.model for step in steps] == ["llama3:latest", "phi:latest"]
    assert steps[0].predicate is None


def test_generate_uses_chat_endpoint_with_system_prompt(monkeypatch):
    recorder = _install(monkeypatch, lambda _endpoint, _payload: DummyResponse({"message": {"content": " Answer [1] "}}))

    assert _client().generate("QUESTION: hi", "be brief") == "Answer [1]"

    endpoint, payload = recorder.requests[0]
    assert endpoint == "http://ollama.local/api/chat"
    assert payload["model"] == "llama3:latest"
    assert payload["stream"] is False
    assert payload["messages"][0] == {"role": "system", "content": "be brief"}
    assert payload["messages"][1]["content"] == "QUESTION: hi"


def test_generate_falls_back_after_timeout(monkeypatch):
    def _handler(_endpoint, payload):
        if payload["model"] == "llama3:latest":
            raise httpx.ReadTimeout("timed out")
        return DummyResponse({"message": {"content": "from fallback"}})

    recorder = _install(monkeypatch, _handler)

    assert _client().generate("prompt") == "from fallback"
    assert [payload["model"] for _endpoint, payload in recorder.requests] == ["llama3:latest", "phi:latest"]


def test_generate_falls_back_when_model_missing(monkeypatch):
    def _handler(_endpoint, payload):
        if payload["model"] == "llama3:latest":
            return DummyResponse({"error": "model not found"}, status_code=404)
        return DummyResponse({"message": {"content": "fallback answer"}})

    _install(monkeypatch, _handler)

    assert _client().generate("prompt") == "fallback answer"


def test_generate_does_not_fall_back_on_malformed_response(monkeypatch):
    recorder = _install(monkeypatch, lambda _endpoint, _payload: DummyResponse({"message": {"content": ""}}))

    with pytest.raises(MalformedResponseError):
        _client().generate("prompt")
    assert len(recorder.requests) == 1


def test_generate_raises_timeout_when_every_step_times_out(monkeypatch):
    def _timeout(_endpoint, _payload):
        raise httpx.ReadTimeout("timed out")

    _install(monkeypatch, _timeout)

    with pytest.raises(GenerationTimeoutError) as exc:
        _client().generate("prompt")
    assert exc.value.error_code == "GENERATION_TIMEOUT"


def test_generate_truncates_long_prompt(monkeypatch):
    recorder = _install(monkeypatch, lambda _endpoint, _payload: DummyResponse({"message": {"content": "ok"}}))

    _client(max_prompt_chars=50).generate("y" * 200)

    sent = recorder.requests[0][1]["messages"][-1]["content"]
    assert sent == "y" * 50 + TRUNCATION_MARKER
