from __future__ import annotations

import json

import pytest
import requests

from nyaya_core.config import LLMConfig
from nyaya_core.errors import ApiKeyUnavailableError
from nyaya_core.llm.gemini_client import GeminiClient, extract_text
from nyaya_core.llm.key_pool import ApiKeyPool


class _FakeResponse:
    def __init__(self, *, status_code: int, payload: dict[str, object]) -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = json.dumps(payload, ensure_ascii=False)

    def raise_for_status(self) -> None:
        if self.status_code < 400:
            return
        error = requests.HTTPError(f"{self.status_code} error")
        error.response = self  # type: ignore[assignment]
        raise error

    def json(self) -> dict[str, object]:
        return self._payload


class _FakeSession:
    def __init__(self, responses: list[_FakeResponse]) -> None:
        self.responses = list(responses)
        self.urls: list[str] = []
        self.keys: list[str] = []
        self.bodies: list[dict[str, object]] = []

    def post(
        self,
        url: str,
        *,
        params: dict[str, str],
        json: dict[str, object],
        timeout: float,
    ) -> _FakeResponse:
        _ = timeout
        self.urls.append(url)
        self.keys.append(params["key"])
        self.bodies.append(json)
        if not self.responses:
            raise RuntimeError("no response queued")
        return self.responses.pop(0)


def _ok_payload(text: str) -> dict[str, object]:
    return {
        "candidates": [
            {
                "content": {
                    "parts": [{"text": text}],
                }
            }
        ]
    }


def _quota_response() -> _FakeResponse:
    return _FakeResponse(
        status_code=429,
        payload={
            "error": {
                "code": 429,
                "status": "RESOURCE_EXHAUSTED",
                "message": "quota exceeded",
            }
        },
    )


def test_gemini_client_fallbacks_to_lite_model_on_quota_exhausted() -> None:
    session = _FakeSession(
        responses=[
            _quota_response(),
            _FakeResponse(status_code=200, payload=_ok_payload('{"ok": true}')),
        ]
    )
    client = GeminiClient(
        api_key="test-key",
        model="gemini-2.5-flash",
        fallback_model="gemini-2.5-flash-lite",
        session=session,  # type: ignore[arg-type]
    )

    output = client.generate("summarize the petition")

    assert output == '{"ok": true}'
    assert len(session.urls) == 2
    assert session.urls[0].endswith("/models/gemini-2.5-flash:generateContent")
    assert session.urls[1].endswith("/models/gemini-2.5-flash-lite:generateContent")


def test_gemini_client_does_not_fallback_on_non_quota_error() -> None:
    session = _FakeSession(
        responses=[
            _FakeResponse(
                status_code=500,
                payload={
                    "error": {
                        "code": 500,
                        "status": "INTERNAL",
                        "message": "internal error",
                    }
                },
            )
        ]
    )
    client = GeminiClient(
        api_key="test-key",
        model="gemini-2.5-flash",
        fallback_model="gemini-2.5-flash-lite",
        session=session,  # type: ignore[arg-type]
    )

    with pytest.raises(requests.HTTPError):
        client.generate("hello")

    assert len(session.urls) == 1


def test_gemini_client_without_fallback_model_raises_quota_error() -> None:
    session = _FakeSession(responses=[_quota_response()])
    client = GeminiClient(
        api_key="test-key",
        model="gemini-2.5-flash",
        fallback_model=None,
        session=session,  # type: ignore[arg-type]
    )

    with pytest.raises(requests.HTTPError):
        client.generate("hello")

    assert len(session.urls) == 1


def test_gemini_client_request_body_carries_system_instruction() -> None:
    session = _FakeSession(
        responses=[_FakeResponse(status_code=200, payload=_ok_payload("plain text"))]
    )
    client = GeminiClient(
        api_key="test-key",
        model="gemini-2.5-flash",
        temperature=0.2,
        session=session,  # type: ignore[arg-type]
    )

    output = client.generate("hello", system_instruction="You are a judge.", json_output=False)

    assert output == "plain text"
    body = session.bodies[0]
    assert body["systemInstruction"] == {"parts": [{"text": "You are a judge."}]}
    assert body["generationConfig"] == {"temperature": 0.2}


def test_gemini_client_from_config_requires_env_key(monkeypatch) -> None:
    monkeypatch.delenv("NYAYA_TEST_KEY", raising=False)
    config = LLMConfig(api_key_env="NYAYA_TEST_KEY")

    with pytest.raises(ValueError, match="NYAYA_TEST_KEY"):
        GeminiClient.from_config(config)

    monkeypatch.setenv("NYAYA_TEST_KEY", "secret")
    client = GeminiClient.from_config(config)
    assert client.key_pool.keys == ("secret",)
    assert client.fallback_model == "gemini-2.5-flash-lite"


def test_extract_text_rejects_empty_candidates() -> None:
    with pytest.raises(ValueError, match="no candidates"):
        extract_text({"candidates": []})

    assert extract_text(_ok_payload("a")) == "a"


def _auth_response() -> _FakeResponse:
    return _FakeResponse(
        status_code=400,
        payload={
            "error": {
                "code": 400,
                "status": "INVALID_ARGUMENT",
                "message": "API key not valid. Please pass a valid API key.",
            }
        },
    )


def test_gemini_client_rotates_to_next_key_on_quota_or_auth_error() -> None:
    clock = {"now": 0}
    pool = ApiKeyPool(["key-a", "key-b", "key-c"], clock=lambda: clock["now"])
    session = _FakeSession(
        responses=[
            _auth_response(),
            _quota_response(),
            _FakeResponse(status_code=200, payload=_ok_payload("done")),
        ]
    )
    client = GeminiClient(
        key_pool=pool,
        model="gemini-2.5-flash",
        fallback_model=None,
        session=session,  # type: ignore[arg-type]
    )

    assert client.generate("hello") == "done"
    assert session.keys == ["key-a", "key-b", "key-c"]
    assert pool.available_keys() == ["key-c"]


def test_gemini_client_keeps_key_on_server_error() -> None:
    pool = ApiKeyPool(["key-a", "key-b"])
    session = _FakeSession(
        responses=[
            _FakeResponse(
                status_code=500,
                payload={"error": {"code": 500, "status": "INTERNAL", "message": "boom"}},
            )
        ]
    )
    client = GeminiClient(
        key_pool=pool,
        model="gemini-2.5-flash",
        session=session,  # type: ignore[arg-type]
    )

    with pytest.raises(requests.HTTPError):
        client.generate("hello")

    assert session.keys == ["key-a"]
    assert pool.available_keys() == ["key-a", "key-b"]


def test_key_pool_cooldown_expires_after_interval() -> None:
    clock = {"now": 1_000}
    pool = ApiKeyPool.from_env_value(" key-a, key-b ,key-a,", clock=lambda: clock["now"])
    assert pool.keys == ("key-a", "key-b")

    pool.mark_failed("key-a")
    assert pool.available_keys() == ["key-b"]
    assert pool.failed_count() == 1

    clock["now"] = 61_000
    assert pool.available_keys() == ["key-b"]

    clock["now"] = 61_001
    assert pool.available_keys() == ["key-a", "key-b"]
    assert pool.failed_count() == 0


def test_gemini_client_raises_when_every_key_is_cooling_down() -> None:
    clock = {"now": 0}
    pool = ApiKeyPool(["key-a", "key-b"], cooldown_ms=500, clock=lambda: clock["now"])
    session = _FakeSession(responses=[_quota_response(), _quota_response()])
    client = GeminiClient(
        key_pool=pool,
        model="gemini-2.5-flash",
        fallback_model=None,
        session=session,  # type: ignore[arg-type]
    )

    with pytest.raises(requests.HTTPError):
        client.generate("hello")
    with pytest.raises(ApiKeyUnavailableError):
        client.generate("hello again")

    assert session.keys == ["key-a", "key-b"]

    clock["now"] = 501
    session.responses.append(_FakeResponse(status_code=200, payload=_ok_payload("back")))
    assert client.generate("hello once more") == "back"
    assert session.keys[-1] == "key-a"


def test_key_pool_rejects_empty_key_list() -> None:
    with pytest.raises(ValueError, match="empty"):
        ApiKeyPool.from_env_value(" , ")


def test_gemini_client_from_config_splits_keys_and_checks_provider(monkeypatch) -> None:
    monkeypatch.setenv("NYAYA_TEST_KEYS", "first,second")
    config = LLMConfig(api_key_env="NYAYA_TEST_KEYS", key_cooldown_ms=5_000)

    client = GeminiClient.from_config(config)

    assert client.key_pool.keys == ("first", "second")
    assert client.key_pool.cooldown_ms == 5_000
    with pytest.raises(ValueError, match="provider"):
        GeminiClient.from_config(LLMConfig(provider="openai", api_key_env="NYAYA_TEST_KEYS"))
