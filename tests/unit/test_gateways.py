from __future__ import annotations

import io
import json
from typing import Any
from urllib import error

import pytest

from agent_hierarchy.definitions.models import SamplingParameters
from agent_hierarchy.engine.errors import InvocationError, TransientInvocationError
from agent_hierarchy.gateway import openai as openai_module
from agent_hierarchy.gateway.base import InferenceRequest
from agent_hierarchy.gateway.deterministic import DeterministicGateway
from agent_hierarchy.gateway.openai import OpenAIChatGateway
from agent_hierarchy.gateway.resolution import resolve_gateway

SCHEMA = {
    "type": "object",
    "properties": {
        "is_valid": {"type": "boolean"},
        "issues": {"type": "array", "items": {"type": "string"}},
        "confidence": {"type": "number"},
        "label": {"type": "string", "enum": ["low", "high"]},
    },
}


def _request(**overrides: Any) -> InferenceRequest:
    values: dict[str, Any] = {
        "node_id": "node-1",
        "prompt": "Summarize this.\n\nInput: {}",
        "sampling": SamplingParameters(temperature=0.4, top_p=0.9, max_tokens=128),
    }
    values.update(overrides)
    return InferenceRequest(**values)


class _FakeResponse:
    def __init__(self, payload: dict[str, Any]) -> None:
        self._raw = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self._raw

    def __enter__(self) -> _FakeResponse:
        return self

    def __exit__(self, *exc: object) -> None:
        return None


def _completion(content: str) -> dict[str, Any]:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def test_resolve_gateway_deterministic_by_default() -> None:
    resolution = resolve_gateway(
        requested_mode="deterministic",
        provider="openai",
        api_key="",
        model="gpt-4o-mini",
        base_url="https://api.openai.com/v1",
        timeout_s=5.0,
    )

    assert isinstance(resolution.gateway, DeterministicGateway)
    assert resolution.effective_mode == "deterministic"
    assert resolution.fallback_reason is None


def test_resolve_gateway_llm_without_key_falls_back() -> None:
    resolution = resolve_gateway(
        requested_mode="llm",
        provider="openai",
        api_key="",
        model="gpt-4o-mini",
        base_url="https://api.openai.com/v1",
        timeout_s=5.0,
    )

    assert isinstance(resolution.gateway, DeterministicGateway)
    assert resolution.requested_mode == "llm"
    assert resolution.fallback_reason == "OPENAI_API_KEY is missing for gateway llm mode"


def test_resolve_gateway_rejects_unknown_provider() -> None:
    resolution = resolve_gateway(
        requested_mode="LLM",
        provider="mystery",
        api_key="sk-test",
        model="m",
        base_url="https://example.invalid",
        timeout_s=5.0,
    )

    assert resolution.effective_mode == "deterministic"
    assert "unsupported gateway provider" in (resolution.fallback_reason or "")


def test_resolve_gateway_llm_mode() -> None:
    resolution = resolve_gateway(
        requested_mode="llm",
        provider="openai",
        api_key="sk-test",
        model="gpt-4o-mini",
        base_url="https://api.openai.com/v1/",
        timeout_s=5.0,
    )

    assert isinstance(resolution.gateway, OpenAIChatGateway)
    assert resolution.gateway.base_url == "https://api.openai.com/v1"
    assert resolution.effective_mode == "llm"


def test_deterministic_gateway_fills_response_schema() -> None:
    result = DeterministicGateway().invoke(_request(response_schema=SCHEMA))

    assert result.output == {"is_valid": True, "issues": [], "confidence": 0.5, "label": "low"}
    assert result.confidence == 0.5
    assert result.model == "deterministic"


def test_deterministic_gateway_echoes_first_prompt_line() -> None:
    result = DeterministicGateway().invoke(_request(prompt="\n  First line  \nsecond"))

    assert result.output == "First line"


def test_openai_gateway_builds_payload_and_parses_json(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    def fake_urlopen(req, timeout):  # noqa: ANN001
        captured["url"] = req.full_url
        captured["body"] = json.loads(req.data.decode("utf-8"))
        captured["timeout"] = timeout
        return _FakeResponse(_completion('{"is_valid": true, "confidence": 0.82}'))

    monkeypatch.setattr(openai_module.request, "urlopen", fake_urlopen)
    gateway = OpenAIChatGateway(api_key="sk-test", model="gpt-4o-mini", timeout_s=7.0)

    result = gateway.invoke(_request(response_schema=SCHEMA, model="gpt-4o"))

    assert captured["url"] == "https://api.openai.com/v1/chat/completions"
    assert captured["timeout"] == 7.0
    body = captured["body"]
    assert body["model"] == "gpt-4o"
    assert body["temperature"] == 0.4
    assert body["top_p"] == 0.9
    assert body["max_tokens"] == 128
    assert body["response_format"]["json_schema"]["schema"] == SCHEMA
    assert result.output == {"is_valid": True, "confidence": 0.82}
    assert result.confidence == 0.82
    assert result.model == "gpt-4o"


def test_openai_gateway_returns_text_without_schema(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        openai_module.request,
        "urlopen",
        lambda req, timeout: _FakeResponse(_completion("  plain answer ")),
    )
    gateway = OpenAIChatGateway(api_key="sk-test")

    result = gateway.invoke(_request())

    assert result.output == "plain answer"
    assert result.confidence is None


@pytest.mark.parametrize(
    ("status", "expected"),
    [(429, TransientInvocationError), (503, TransientInvocationError), (400, InvocationError)],
)
def test_openai_gateway_classifies_http_errors(
    status: int, expected: type[Exception], monkeypatch: pytest.MonkeyPatch
) -> None:
    def fake_urlopen(req, timeout):  # noqa: ANN001
        raise error.HTTPError(req.full_url, status, "error", hdrs=None, fp=io.BytesIO(b"nope"))

    monkeypatch.setattr(openai_module.request, "urlopen", fake_urlopen)
    gateway = OpenAIChatGateway(api_key="sk-test")

    with pytest.raises(expected) as excinfo:
        gateway.invoke(_request())

    assert f"status {status}" in str(excinfo.value)
    if expected is InvocationError:
        assert not isinstance(excinfo.value, TransientInvocationError)


def test_openai_gateway_network_errors_are_transient(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req, timeout):  # noqa: ANN001
        raise error.URLError("connection refused")

    monkeypatch.setattr(openai_module.request, "urlopen", fake_urlopen)

    with pytest.raises(TransientInvocationError):
        OpenAIChatGateway(api_key="sk-test").invoke(_request())


def test_openai_gateway_rejects_malformed_responses(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        openai_module.request,
        "urlopen",
        lambda req, timeout: _FakeResponse(_completion("not json at all")),
    )
    gateway = OpenAIChatGateway(api_key="sk-test")

    with pytest.raises(InvocationError, match="not valid JSON"):
        gateway.invoke(_request(response_schema=SCHEMA))

    monkeypatch.setattr(
        openai_module.request, "urlopen", lambda req, timeout: _FakeResponse({"choices": []})
    )
    with pytest.raises(InvocationError, match="missing choices"):
        gateway.invoke(_request())


def test_openai_gateway_requires_api_key() -> None:
    with pytest.raises(RuntimeError):
        OpenAIChatGateway(api_key="")
