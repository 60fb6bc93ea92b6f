from __future__ import annotations

import logging
import os
from typing import Any

import requests

from nyaya_core.config import LLMConfig
from nyaya_core.llm.key_pool import ApiKeyPool

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"
SUPPORTED_PROVIDERS = ("gemini",)
_QUOTA_STATUS_CODES = {403, 429}
_AUTH_STATUS_CODES = {401, 403}
_QUOTA_TOKENS = (
    "resource_exhausted",
    "quota",
    "rate limit",
    "too many requests",
    "exceeded",
)
_AUTH_TOKENS = (
    "api key",
    "api_key_invalid",
    "unauthorized",
    "permission_denied",
)

logger = logging.getLogger(__name__)


class GeminiClient:
    """Blocking generateContent client; callers run it in a worker thread.

    Keys come from an ``ApiKeyPool``. A quota or auth failure marks the key
    as failed and the request moves on to the next available key.
    """

    def __init__(
        self,
        *,
        model: str,
        api_key: str | None = None,
        key_pool: ApiKeyPool | None = None,
        fallback_model: str | None = None,
        temperature: float = 0.0,
        timeout_seconds: float = 60.0,
        session: requests.Session | None = None,
    ) -> None:
        if key_pool is None:
            if api_key is None or not api_key.strip():
                raise ValueError("Gemini API key is empty.")
            key_pool = ApiKeyPool.from_env_value(api_key)
        elif api_key is not None:
            raise ValueError("Pass either api_key or key_pool, not both.")
        if not model.strip():
            raise ValueError("Gemini model is empty.")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0.")

        self.key_pool = key_pool
        self.model = model
        self.fallback_model = fallback_model if fallback_model != model else None
        self.temperature = temperature
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

    @classmethod
    def from_config(
        cls,
        config: LLMConfig,
        *,
        session: requests.Session | None = None,
        key_pool: ApiKeyPool | None = None,
    ) -> GeminiClient:
        if config.provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"Unsupported llm.provider: {config.provider}")
        if key_pool is None:
            raw_keys = os.getenv(config.api_key_env, "").strip()
            if not raw_keys:
                raise ValueError(f"Environment variable {config.api_key_env} is not set.")
            key_pool = ApiKeyPool.from_env_value(raw_keys, cooldown_ms=config.key_cooldown_ms)
        return cls(
            key_pool=key_pool,
            model=config.model,
            fallback_model=config.fallback_model,
            temperature=config.temperature,
            session=session,
        )

    def generate(
        self,
        prompt: str,
        *,
        system_instruction: str | None = None,
        json_output: bool = True,
    ) -> str:
        body = self._build_body(
            prompt,
            system_instruction=system_instruction,
            json_output=json_output,
        )
        last_error: requests.HTTPError | None = None
        for api_key in self.key_pool.require_available():
            try:
                return self._generate_with_key(body, api_key=api_key)
            except requests.HTTPError as exc:
                if not _is_key_error(exc.response):
                    raise
                self.key_pool.mark_failed(api_key)
                last_error = exc
        assert last_error is not None
        raise last_error

    def _generate_with_key(self, body: dict[str, Any], *, api_key: str) -> str:
        try:
            return self._post(body, model=self.model, api_key=api_key)
        except requests.HTTPError as exc:
            if self.fallback_model is None or not _is_quota_error(exc.response):
                raise
            logger.warning(
                "gemini quota exhausted model=%s, retrying with model=%s",
                self.model,
                self.fallback_model,
            )
            return self._post(body, model=self.fallback_model, api_key=api_key)

    def _build_body(
        self,
        prompt: str,
        *,
        system_instruction: str | None,
        json_output: bool,
    ) -> dict[str, Any]:
        generation_config: dict[str, Any] = {"temperature": self.temperature}
        if json_output:
            generation_config["responseMimeType"] = "application/json"
        body: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }
        if system_instruction:
            body["systemInstruction"] = {"parts": [{"text": system_instruction}]}
        return body

    def _post(self, body: dict[str, Any], *, model: str, api_key: str) -> str:
        response = self.session.post(
            f"{GEMINI_API_BASE}/models/{model}:generateContent",
            params={"key": api_key},
            json=body,
            timeout=self.timeout_seconds,
        )
        response.raise_for_status()
        return extract_text(response.json())


def extract_text(payload: Any) -> str:
    candidates = payload.get("candidates") if isinstance(payload, dict) else None
    if not isinstance(candidates, list) or not candidates:
        raise ValueError("Gemini response has no candidates.")

    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        raise ValueError("Gemini response has no content parts.")

    text = "".join(
        part["text"]
        for part in parts
        if isinstance(part, dict) and isinstance(part.get("text"), str)
    )
    if not text.strip():
        raise ValueError("Gemini response has no text output.")
    return text


def _is_quota_error(response: requests.Response | None) -> bool:
    if response is None or response.status_code not in _QUOTA_STATUS_CODES:
        return False

    try:
        payload = response.json()
    except ValueError:
        payload = {}
    error = payload.get("error", payload) if isinstance(payload, dict) else {}
    if not isinstance(error, dict):
        error = {}

    if str(error.get("status", "")).upper() == "RESOURCE_EXHAUSTED":
        return True
    haystack = " ".join(
        [str(error.get("message", "")), str(error.get("reason", "")), response.text]
    ).lower()
    return any(token in haystack for token in _QUOTA_TOKENS)


def _is_key_error(response: requests.Response | None) -> bool:
    if response is None:
        return False
    if _is_quota_error(response):
        return True
    if response.status_code in _AUTH_STATUS_CODES:
        return True
    if response.status_code != 400:
        return False
    haystack = response.text.lower()
    return any(token in haystack for token in _AUTH_TOKENS)
