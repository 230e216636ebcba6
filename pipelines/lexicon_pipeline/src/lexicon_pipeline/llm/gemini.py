from __future__ import annotations

import sys
from dataclasses import dataclass, field
from typing import Any

import httpx

from lexicon_contracts.validate import load_schema
from lexicon_pipeline.llm.prompts import SYSTEM_INSTRUCTION
from lexicon_pipeline.settings import settings

# Keys of the OpenAPI subset accepted by `generationConfig.responseSchema`.
_GEMINI_SCHEMA_KEYS = {"type", "properties", "items", "required", "enum", "description", "nullable"}


def to_gemini_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """
    Convert the JSON Schema contract to Gemini's schema dialect:
    upper-case type names, `["x", "null"]` becomes `nullable`, unsupported keywords are dropped.
    """
    out: dict[str, Any] = {}
    for key, value in schema.items():
        if key not in _GEMINI_SCHEMA_KEYS:
            continue
        if key == "type":
            if isinstance(value, list):
                non_null = [t for t in value if t != "null"]
                if len(non_null) != len(value):
                    out["nullable"] = True
                value = non_null[0] if non_null else "string"
            out["type"] = str(value).upper()
        elif key == "properties":
            out["properties"] = {name: to_gemini_schema(sub) for name, sub in value.items()}
        elif key == "items":
            out["items"] = to_gemini_schema(value)
        else:
            out[key] = value
    return out


_response_schema: dict[str, Any] | None = None


def _default_response_schema() -> dict[str, Any]:
    global _response_schema
    if _response_schema is None:
        _response_schema = to_gemini_schema(load_schema())
    return _response_schema


@dataclass
class GeminiClient:
    """
    Gemini client using the REST `generateContent` endpoint.

    - POST {base_url}/models/{model}:generateContent
    - header x-goog-api-key: <key>
    - fixed system instruction, temperature 0, JSON mime type and the entries response schema

    Safe to share between threads; each call is bounded by its own timeout.
    """

    api_key: str
    base_url: str = settings.gemini_base_url
    model: str = settings.gemini_model
    timeout_s: float = settings.llm_timeout_s
    max_output_tokens: int = settings.gemini_max_output_tokens
    system_instruction: str = SYSTEM_INSTRUCTION
    response_schema: dict[str, Any] | None = None
    transport: httpx.BaseTransport | None = None
    _client: httpx.Client | None = field(default=None, init=False, repr=False)

    def __enter__(self) -> "GeminiClient":
        self._ensure_client()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _ensure_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=httpx.Timeout(self.timeout_s), transport=self.transport)
        return self._client

    def build_payload(self, text: str) -> dict[str, Any]:
        if self.response_schema is not None:
            schema = to_gemini_schema(self.response_schema)
        else:
            schema = _default_response_schema()
        return {
            "systemInstruction": {"parts": [{"text": self.system_instruction}]},
            "contents": [{"role": "user", "parts": [{"text": text}]}],
            "generationConfig": {
                "temperature": settings.llm_temperature,
                "maxOutputTokens": self.max_output_tokens,
                "responseMimeType": "application/json",
                "responseSchema": schema,
            },
        }

    def generate_response(self, text: str, timeout_s: float | None = None) -> str:
        timeout = timeout_s if timeout_s is not None else self.timeout_s
        url = f"{self.base_url.rstrip('/')}/models/{self.model}:generateContent"
        headers = {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

        try:
            resp = self._ensure_client().post(
                url, headers=headers, json=self.build_payload(text), timeout=httpx.Timeout(timeout)
            )
        except httpx.TimeoutException:
            print(f"[llm] request timed out after {timeout:.0f}s", file=sys.stderr)
            return ""
        except httpx.HTTPError as exc:
            print(f"[llm] error calling {url}: {exc}", file=sys.stderr)
            return ""

        if resp.status_code >= 400:
            print(f"[llm] Gemini error {resp.status_code}: {resp.text[:500]}", file=sys.stderr)
            return ""

        try:
            data = resp.json()
        except ValueError:
            print(f"[llm] non-JSON envelope from {url}: {resp.text[:200]!r}", file=sys.stderr)
            return ""
        return extract_candidate_text(data)


def extract_candidate_text(data: dict[str, Any]) -> str:
    """Concatenate the text parts of the first candidate; "" when there is none."""
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    content = candidates[0].get("content") or {}
    parts = content.get("parts") or []
    return "".join(part["text"] for part in parts if isinstance(part.get("text"), str))
