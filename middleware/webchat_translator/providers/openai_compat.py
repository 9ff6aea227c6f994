"""OpenAI-compatible HTTP backend."""

from __future__ import annotations

from typing import Any, Dict, List, Optional
import json
import threading
import time
from urllib.parse import urlparse

import requests

from .base import ProviderError


DEFAULT_TIMEOUT_SECONDS = 120
MAX_ERROR_TEXT_CHARS = 4000


class _RpmLimiter:
    def __init__(self, rpm: int):
        self.rpm = rpm
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def acquire(self) -> None:
        if self.rpm <= 0:
            return
        interval = 60.0 / float(self.rpm)
        with self._lock:
            now = time.monotonic()
            slot = max(self._next_slot, now)
            self._next_slot = slot + interval
            wait_seconds = slot - now
        if wait_seconds > 0:
            time.sleep(wait_seconds)


def build_url(base_url: str) -> str:
    base_url = base_url.strip().rstrip("/")
    if not base_url:
        return ""
    if base_url.endswith("/chat/completions"):
        return base_url
    path = (urlparse(base_url).path or "").lower()
    # bare host: assume the conventional /v1 prefix
    if not path or path == "/":
        return f"{base_url}/v1/chat/completions"
    return f"{base_url}/chat/completions"


class OpenAICompatBackend:
    """``generate(prompt) -> str`` against a chat-completions endpoint."""

    def __init__(
        self,
        base_url: str,
        model: str,
        *,
        api_key: str = "",
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout: int = DEFAULT_TIMEOUT_SECONDS,
        rpm: int = 0,
        session: Optional[requests.Session] = None,
    ):
        if not str(base_url or "").strip():
            raise ProviderError("OpenAI-compatible backend requires base_url", error_type="invalid_config")
        if not str(model or "").strip():
            raise ProviderError("OpenAI-compatible backend requires model", error_type="invalid_config")
        self.url = build_url(base_url)
        self.model = model.strip()
        self.api_key = api_key.strip()
        self.system_prompt = system_prompt
        self.temperature = temperature
        self.timeout = timeout
        self._rpm_limiter = _RpmLimiter(rpm) if rpm > 0 else None
        self._session = session or requests.Session()

    def build_messages(self, prompt: str) -> List[Dict[str, str]]:
        messages: List[Dict[str, str]] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages

    def __call__(self, prompt: str) -> str:
        return self.generate(prompt)

    def generate(self, prompt: str) -> str:
        if self._rpm_limiter:
            self._rpm_limiter.acquire()

        headers: Dict[str, str] = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": self.build_messages(prompt),
        }
        if self.temperature is not None:
            payload["temperature"] = self.temperature

        start = time.perf_counter()
        try:
            resp = self._session.post(
                self.url,
                headers=headers,
                data=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise ProviderError(
                f"OpenAI-compatible request timeout: {exc}",
                error_type="timeout",
                duration_ms=int((time.perf_counter() - start) * 1000),
                url=self.url,
            ) from exc
        except requests.RequestException as exc:
            raise ProviderError(
                f"OpenAI-compatible request failed: {exc}",
                error_type="network_error",
                duration_ms=int((time.perf_counter() - start) * 1000),
                url=self.url,
            ) from exc

        duration_ms = int((time.perf_counter() - start) * 1000)
        if resp.status_code >= 400:
            body_preview = (resp.text or "").strip()[:MAX_ERROR_TEXT_CHARS]
            raise ProviderError(
                f"OpenAI-compatible HTTP {resp.status_code}: {body_preview}",
                error_type="rate_limited" if resp.status_code == 429 else "http_error",
                status_code=resp.status_code,
                duration_ms=duration_ms,
                url=self.url,
                response_text=body_preview,
            )

        try:
            data = resp.json()
            text = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            body_preview = (resp.text or "").strip()[:MAX_ERROR_TEXT_CHARS]
            raise ProviderError(
                "OpenAI-compatible response missing content",
                error_type="invalid_response",
                status_code=resp.status_code,
                duration_ms=duration_ms,
                url=self.url,
                response_text=body_preview,
            ) from exc
        return str(text or "")
