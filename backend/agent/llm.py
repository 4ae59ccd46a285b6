from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

import httpx

from agent.errors import LLMError
from agent.types import ToolCall


logger = logging.getLogger("chronos-backend.llm")

OPENAI_CHAT_COMPLETIONS_URL = "https://api.openai.com/v1/chat/completions"
GEMINI_GENERATE_CONTENT_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent?key={api_key}"


@dataclass
class ModelTurn:
    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    raw: dict[str, Any] | None = None


def extract_json_object(text: str) -> dict[str, Any] | None:
    candidate = (text or "").strip()
    try:
        parsed = json.loads(candidate)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass
    match = re.search(r"\{.*\}", candidate, flags=re.DOTALL)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        return None
    return None


def history_to_messages(history: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
    """Convert client chat history ({role, content}) into model messages."""
    messages: list[dict[str, Any]] = []
    for item in history or []:
        if not isinstance(item, dict):
            continue
        role = str(item.get("role", "")).strip().lower()
        content = item.get("content")
        if not isinstance(content, str) or not content.strip():
            continue
        if role == "user":
            messages.append({"role": "user", "content": content})
        elif role in {"assistant", "model"}:
            messages.append({"role": "assistant", "content": content, "tool_calls": []})
    return messages


def _gemini_schema(schema: dict[str, Any]) -> dict[str, Any]:
    converted: dict[str, Any] = {}
    for key, value in schema.items():
        if key == "type" and isinstance(value, str):
            converted[key] = value.upper()
        elif key == "properties" and isinstance(value, dict):
            converted[key] = {name: _gemini_schema(spec) for name, spec in value.items() if isinstance(spec, dict)}
        elif key == "items" and isinstance(value, dict):
            converted[key] = _gemini_schema(value)
        else:
            converted[key] = value
    return converted


class GeminiChatModel:
    provider = "gemini"

    def __init__(self, *, api_key: str, model: str, timeout: float = 30):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    def _function_declarations(self, tools: list[dict[str, Any]]) -> list[dict[str, Any]]:
        declarations = []
        for tool in tools:
            item: dict[str, Any] = {"name": tool["name"], "description": tool["description"]}
            schema = tool.get("input_schema") or {}
            if schema.get("properties"):
                item["parameters"] = _gemini_schema(schema)
            declarations.append(item)
        return declarations

    def _contents(self, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        contents: list[dict[str, Any]] = []
        for message in messages:
            role = message.get("role")
            if role == "user":
                contents.append({"role": "user", "parts": [{"text": message["content"]}]})
            elif role == "assistant":
                raw = message.get("raw")
                if isinstance(raw, dict) and raw.get("parts"):
                    contents.append({"role": "model", "parts": raw["parts"]})
                    continue
                parts: list[dict[str, Any]] = []
                if message.get("content"):
                    parts.append({"text": message["content"]})
                for call in message.get("tool_calls") or []:
                    parts.append({"functionCall": {"name": call.name, "args": call.arguments}})
                if parts:
                    contents.append({"role": "model", "parts": parts})
            elif role == "tool":
                parts = [
                    {"functionResponse": {"name": item["call"].name, "response": item["response"]}}
                    for item in message.get("results") or []
                ]
                if parts:
                    contents.append({"role": "user", "parts": parts})
        return contents

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        url = GEMINI_GENERATE_CONTENT_URL.format(model=self.model, api_key=self.api_key)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers={"Content-Type": "application/json"})
        except httpx.HTTPError as exc:
            raise LLMError(f"gemini:error:{exc.__class__.__name__}") from exc
        if response.status_code >= 400:
            logger.warning("gemini request failed status=%s body=%s", response.status_code, response.text[:300])
            raise LLMError(f"gemini:http_{response.status_code}")
        return response.json()

    @staticmethod
    def _first_content(data: dict[str, Any]) -> dict[str, Any]:
        candidates = data.get("candidates") or [{}]
        content = candidates[0].get("content") or {}
        return content if isinstance(content, dict) else {}

    async def generate(
        self,
        *,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ModelTurn:
        payload: dict[str, Any] = {
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "contents": self._contents(messages),
            "generationConfig": {"temperature": 0.2},
        }
        if tools:
            payload["tools"] = [{"functionDeclarations": self._function_declarations(tools)}]
        content = self._first_content(await self._post(payload))
        parts = [part for part in content.get("parts") or [] if isinstance(part, dict)]
        text = "".join(str(part.get("text", "")) for part in parts if "text" in part and not part.get("thought")).strip()
        calls: list[ToolCall] = []
        for idx, part in enumerate(parts):
            function_call = part.get("functionCall")
            if not isinstance(function_call, dict):
                continue
            args = function_call.get("args")
            calls.append(
                ToolCall(
                    name=str(function_call.get("name", "")),
                    arguments=args if isinstance(args, dict) else {},
                    call_id=str(function_call.get("id") or f"call_{idx}"),
                )
            )
        return ModelTurn(text=text, tool_calls=calls, raw={"parts": parts})

    async def generate_json(self, *, system_prompt: str, user_prompt: str) -> dict[str, Any]:
        payload = {
            "contents": [{"role": "user", "parts": [{"text": f"{system_prompt}\n\n{user_prompt}"}]}],
            "generationConfig": {"temperature": 0, "responseMimeType": "application/json"},
        }
        content = self._first_content(await self._post(payload))
        text = "".join(str(part.get("text", "")) for part in content.get("parts") or [] if isinstance(part, dict))
        parsed = extract_json_object(text)
        if not parsed:
            raise LLMError("gemini:invalid_json")
        return parsed


class OpenAIChatModel:
    provider = "openai"

    def __init__(self, *, api_key: str, model: str, timeout: float = 30):
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    def _messages(self, system_prompt: str, messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        for message in messages:
            role = message.get("role")
            if role == "user":
                out.append({"role": "user", "content": message["content"]})
            elif role == "assistant":
                item: dict[str, Any] = {"role": "assistant", "content": message.get("content") or None}
                calls = message.get("tool_calls") or []
                if calls:
                    item["tool_calls"] = [
                        {
                            "id": call.call_id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": json.dumps(call.arguments, ensure_ascii=False)},
                        }
                        for call in calls
                    ]
                out.append(item)
            elif role == "tool":
                for result in message.get("results") or []:
                    out.append(
                        {
                            "role": "tool",
                            "tool_call_id": result["call"].call_id,
                            "content": json.dumps(result["response"], ensure_ascii=False),
                        }
                    )
        return out

    async def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(OPENAI_CHAT_COMPLETIONS_URL, headers=headers, json=payload)
        except httpx.HTTPError as exc:
            raise LLMError(f"openai:error:{exc.__class__.__name__}") from exc
        if response.status_code >= 400:
            logger.warning("openai request failed status=%s body=%s", response.status_code, response.text[:300])
            raise LLMError(f"openai:http_{response.status_code}")
        return response.json()

    async def generate(
        self,
        *,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
    ) -> ModelTurn:
        payload: dict[str, Any] = {
            "model": self.model,
            "temperature": 0.2,
            "messages": self._messages(system_prompt, messages),
        }
        if tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool["name"],
                        "description": tool["description"],
                        "parameters": tool.get("input_schema") or {"type": "object", "properties": {}},
                    },
                }
                for tool in tools
            ]
            payload["tool_choice"] = "auto"
        data = await self._post(payload)
        message = (data.get("choices") or [{}])[0].get("message") or {}
        calls: list[ToolCall] = []
        for item in message.get("tool_calls") or []:
            function = item.get("function") or {}
            try:
                args = json.loads(function.get("arguments") or "{}")
            except json.JSONDecodeError:
                args = {}
            calls.append(
                ToolCall(
                    name=str(function.get("name", "")),
                    arguments=args if isinstance(args, dict) else {},
                    call_id=item.get("id"),
                )
            )
        return ModelTurn(text=str(message.get("content") or "").strip(), tool_calls=calls)

    async def generate_json(self, *, system_prompt: str, user_prompt: str) -> dict[str, Any]:
        payload = {
            "model": self.model,
            "temperature": 0,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        data = await self._post(payload)
        content = str((data.get("choices") or [{}])[0].get("message", {}).get("content") or "").strip()
        if not content:
            raise LLMError("openai:empty_content")
        parsed = extract_json_object(content)
        if not parsed:
            raise LLMError("openai:invalid_json")
        return parsed


def build_chat_model(settings, *, provider: str | None = None, model: str | None = None):
    name = (provider or settings.llm_provider or "gemini").strip().lower()
    model_name = (model or settings.llm_model or "").strip()
    timeout = float(settings.llm_timeout_seconds)
    if name == "gemini":
        if not settings.google_api_key:
            raise LLMError("google_api_key_missing")
        return GeminiChatModel(api_key=settings.google_api_key, model=model_name, timeout=timeout)
    if name == "openai":
        if not settings.openai_api_key:
            raise LLMError("openai_api_key_missing")
        return OpenAIChatModel(api_key=settings.openai_api_key, model=model_name, timeout=timeout)
    raise LLMError(f"unsupported_provider:{name}")


def build_json_models(settings) -> list:
    attempts = [(settings.llm_provider, settings.llm_model)]
    fallback_provider = (settings.llm_fallback_provider or "").strip().lower()
    fallback_model = (settings.llm_fallback_model or "").strip()
    if fallback_provider and fallback_model:
        attempts.append((fallback_provider, fallback_model))

    models = []
    errors: list[str] = []
    used: set[tuple[str, str]] = set()
    for provider, model in attempts:
        key = (str(provider).strip().lower(), str(model).strip())
        if key in used:
            continue
        used.add(key)
        try:
            models.append(build_chat_model(settings, provider=provider, model=model))
        except LLMError as exc:
            errors.append(str(exc))
    if not models:
        raise LLMError("|".join(errors) if errors else "llm_unconfigured")
    return models
