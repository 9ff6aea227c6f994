import pytest
import requests

from webchat_translator.core.completion import GenerationFailed, Success, TimedOut
from webchat_translator.providers.base import CallableTurnRunner, ProviderError
from webchat_translator.providers.openai_compat import OpenAICompatBackend, build_url


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, headers=None, data=None, timeout=None):
        self.calls.append({"url": url, "headers": headers, "data": data})
        if self.error is not None:
            raise self.error
        return self.response


@pytest.mark.unit
@pytest.mark.parametrize(
    "base,expected",
    [
        ("http://localhost:8000", "http://localhost:8000/v1/chat/completions"),
        ("http://localhost:8000/v1/", "http://localhost:8000/v1/chat/completions"),
        ("https://api.example.com/v1/chat/completions", "https://api.example.com/v1/chat/completions"),
    ],
)
def test_build_url(base, expected):
    assert build_url(base) == expected


@pytest.mark.unit
def test_backend_posts_chat_completion():
    session = FakeSession(FakeResponse(payload={"choices": [{"message": {"content": "안녕"}}]}))
    backend = OpenAICompatBackend(
        "http://localhost:8000", "gpt", api_key="k", system_prompt="sys", session=session
    )
    assert backend("こんにちは") == "안녕"
    call = session.calls[0]
    assert call["headers"]["Authorization"] == "Bearer k"
    assert "こんにちは".encode("utf-8") in call["data"]


@pytest.mark.unit
@pytest.mark.parametrize(
    "session,error_type",
    [
        (FakeSession(error=requests.Timeout("slow")), "timeout"),
        (FakeSession(error=requests.ConnectionError("down")), "network_error"),
        (FakeSession(FakeResponse(status_code=429, text="slow down")), "rate_limited"),
        (FakeSession(FakeResponse(status_code=500, text="oops")), "http_error"),
        (FakeSession(FakeResponse(payload={"choices": []})), "invalid_response"),
    ],
)
def test_backend_error_types(session, error_type):
    backend = OpenAICompatBackend("http://localhost:8000", "gpt", session=session)
    with pytest.raises(ProviderError) as excinfo:
        backend.generate("x")
    assert excinfo.value.error_type == error_type


@pytest.mark.unit
def test_backend_requires_config():
    with pytest.raises(ProviderError):
        OpenAICompatBackend("", "gpt")
    with pytest.raises(ProviderError):
        OpenAICompatBackend("http://localhost", " ")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_callable_runner_sync_and_async():
    async def agenerate(prompt):
        return prompt.upper()

    assert (await CallableTurnRunner(lambda p: p[::-1]).run_turn("abc")).text == "cba"
    outcome = await CallableTurnRunner(agenerate).run_turn("abc")
    assert isinstance(outcome, Success)
    assert outcome.text == "ABC"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_callable_runner_maps_exceptions():
    def rate_limited(prompt):
        raise ProviderError("429", error_type="rate_limited")

    def timed_out(prompt):
        raise ProviderError("slow", error_type="timeout")

    def broken(prompt):
        raise KeyError("boom")

    outcome = await CallableTurnRunner(rate_limited).run_turn("x")
    assert isinstance(outcome, GenerationFailed) and outcome.kind == "rate_limited"
    assert isinstance(await CallableTurnRunner(timed_out).run_turn("x"), TimedOut)
    outcome = await CallableTurnRunner(broken).run_turn("x")
    assert isinstance(outcome, GenerationFailed) and outcome.kind == "backend_error"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_callable_runner_reset_hook():
    resets = []

    async def reset():
        resets.append(1)
        return "conv-9"

    runner = CallableTurnRunner(lambda p: p, reset=reset)
    assert await runner.reset_session() == "conv-9"
    assert await CallableTurnRunner(lambda p: p).reset_session() is None
    assert resets == [1]
