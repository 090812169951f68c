"""OpenAI chat-completions gateway.

Makes exactly one HTTP request per ``invoke``: retrying is the fallback
policy's job, so failures are classified here and returned as errors.
"""

from __future__ import annotations

import json
import logging
import os
import socket
from typing import Any
from urllib import error, request

from agent_hierarchy.engine.errors import InvocationError, TransientInvocationError
from agent_hierarchy.gateway.base import InferenceRequest, InferenceResult

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504})


class OpenAIChatGateway:
    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 30.0,
    ) -> None:
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY is missing")
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    def invoke(self, inference: InferenceRequest) -> InferenceResult:
        model = inference.model or self.model
        payload = self._build_payload(inference, model=model)
        response_json = self._request(payload, node_id=inference.node_id)
        content = self._extract_content(response_json, node_id=inference.node_id)

        if inference.response_schema is None:
            return InferenceResult(output=content, model=model)

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            raise InvocationError(
                "Model response was not valid JSON", node_id=inference.node_id
            ) from exc
        return InferenceResult(
            output=parsed,
            confidence=_confidence_of(parsed),
            model=model,
        )

    def _build_payload(self, inference: InferenceRequest, *, model: str) -> dict[str, Any]:
        sampling = inference.sampling
        payload: dict[str, Any] = {
            "model": model,
            "temperature": sampling.temperature,
            "messages": [{"role": "user", "content": inference.prompt}],
        }
        if sampling.top_p is not None:
            payload["top_p"] = sampling.top_p
        if sampling.max_tokens is not None:
            payload["max_tokens"] = sampling.max_tokens
        if inference.response_schema is not None:
            payload["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": f"node_{inference.node_id}".replace("-", "_")[:64],
                    # strict mode needs additionalProperties=false on every object
                    "strict": False,
                    "schema": inference.response_schema,
                },
            }
        return payload

    def _request(self, payload: dict[str, Any], *, node_id: str) -> dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        if _trace_enabled():
            logger.warning(
                "LLM trace request node=%s model=%s url=%s timeout_s=%s",
                node_id,
                payload.get("model"),
                url,
                self.timeout_s,
            )
        req = request.Request(
            url=url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                raw = response.read().decode("utf-8")
        except error.HTTPError as exc:
            message = exc.read().decode("utf-8", errors="replace")
            error_cls = (
                TransientInvocationError
                if exc.code in TRANSIENT_STATUS_CODES
                else InvocationError
            )
            raise error_cls(
                f"LLM request failed with status {exc.code}: {message[:400]}",
                node_id=node_id,
            ) from exc
        except (error.URLError, TimeoutError, socket.timeout) as exc:
            reason = getattr(exc, "reason", exc)
            raise TransientInvocationError(
                f"LLM request failed: {reason}", node_id=node_id
            ) from exc

        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise InvocationError(
                "LLM endpoint returned non-JSON response", node_id=node_id
            ) from exc

    @staticmethod
    def _extract_content(response_json: dict[str, Any], *, node_id: str) -> str:
        choices = response_json.get("choices", [])
        if not choices:
            raise InvocationError("LLM response missing choices", node_id=node_id)

        message = choices[0].get("message", {})
        content = message.get("content")
        if isinstance(content, str):
            text = content.strip()
        elif isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict) and isinstance(item.get("text"), str):
                    parts.append(item["text"])
            text = "".join(parts).strip()
        else:
            text = ""

        if not text:
            raise InvocationError("LLM response content is empty", node_id=node_id)
        return text


def _confidence_of(parsed: Any) -> float | None:
    if not isinstance(parsed, dict):
        return None
    for key in ("confidence", "confidence_score", "score"):
        value = parsed.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            return float(value)
    return None


def _trace_enabled() -> bool:
    return os.getenv("AGENT_HIERARCHY_LLM_TRACE", "0").strip() == "1"
