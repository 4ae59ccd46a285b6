from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any


TOOL_SPECS_DIR = Path(__file__).resolve().parent / "tool_specs"
_FLAG_FIELDS = ("destructive", "trusted_auto_execute", "headless", "targets_entity")


class ToolSpecValidationError(ValueError):
    pass


@dataclass(frozen=True)
class ToolDefinition:
    service: str
    version: str
    tool_name: str
    description: str
    input_schema: dict[str, Any]
    destructive: bool = False
    trusted_auto_execute: bool = False
    headless: bool = False
    targets_entity: bool = False

    @property
    def required_fields(self) -> tuple[str, ...]:
        return tuple(self.input_schema.get("required", []))

    def to_llm_tool(self) -> dict[str, Any]:
        return {
            "name": self.tool_name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


def _load_json(path: Path) -> dict[str, Any]:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ToolSpecValidationError(f"Invalid JSON in {path}") from exc


def _require_str(spec: dict[str, Any], key: str, path: Path) -> str:
    value = spec.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ToolSpecValidationError(f"{path}: '{key}' must be a non-empty string")
    return value


def _validate_service_spec(spec: dict[str, Any], path: Path) -> None:
    _require_str(spec, "service", path)
    _require_str(spec, "version", path)
    tools = spec.get("tools")
    if not isinstance(tools, list) or not tools:
        raise ToolSpecValidationError(f"{path}: 'tools' must be a non-empty array")
    for idx, tool in enumerate(tools):
        if not isinstance(tool, dict):
            raise ToolSpecValidationError(f"{path}: tools[{idx}] must be an object")
        for field in ("tool_name", "description"):
            _require_str(tool, field, path)
        schema = tool.get("input_schema")
        if not isinstance(schema, dict):
            raise ToolSpecValidationError(f"{path}: tools[{idx}].input_schema must be an object")
        properties = schema.get("properties", {})
        required = schema.get("required", [])
        if not isinstance(properties, dict) or not isinstance(required, list):
            raise ToolSpecValidationError(f"{path}: tools[{idx}].input_schema needs properties/required")
        for name in required:
            if name not in properties:
                raise ToolSpecValidationError(f"{path}: tools[{idx}] requires undeclared property '{name}'")
        for flag in _FLAG_FIELDS:
            if not isinstance(tool.get(flag, False), bool):
                raise ToolSpecValidationError(f"{path}: tools[{idx}].{flag} must be a boolean")
        if tool.get("headless") and tool.get("destructive"):
            raise ToolSpecValidationError(f"{path}: tools[{idx}] cannot be both headless and destructive")


class ToolRegistry:
    def __init__(self, tools: list[ToolDefinition]):
        self._tools = tools
        self._by_name = {tool.tool_name: tool for tool in tools}

    @classmethod
    def load_from_disk(cls, specs_dir: Path | None = None) -> "ToolRegistry":
        tools: list[ToolDefinition] = []
        seen: set[str] = set()
        for path in sorted((specs_dir or TOOL_SPECS_DIR).glob("*.json")):
            spec = _load_json(path)
            _validate_service_spec(spec, path)
            service = spec["service"].strip().lower()
            version = spec["version"].strip()
            for item in spec["tools"]:
                name = item["tool_name"].strip()
                if name in seen:
                    raise ToolSpecValidationError(f"{path}: duplicate tool_name '{name}'")
                seen.add(name)
                tools.append(
                    ToolDefinition(
                        service=service,
                        version=version,
                        tool_name=name,
                        description=item["description"].strip(),
                        input_schema=item["input_schema"],
                        destructive=bool(item.get("destructive", False)),
                        trusted_auto_execute=bool(item.get("trusted_auto_execute", False)),
                        headless=bool(item.get("headless", False)),
                        targets_entity=bool(item.get("targets_entity", False)),
                    )
                )
        return cls(tools)

    def list_services(self) -> list[str]:
        return sorted({tool.service for tool in self._tools})

    def service_versions(self) -> dict[str, str]:
        return {tool.service: tool.version for tool in self._tools}

    def list_tools(self, service: str | None = None, *, headless: bool = False) -> list[ToolDefinition]:
        tools = list(self._tools)
        if service:
            normalized = service.lower().strip()
            tools = [tool for tool in tools if tool.service == normalized]
        if headless:
            tools = [tool for tool in tools if tool.headless]
        return tools

    def has_tool(self, tool_name: str) -> bool:
        return tool_name in self._by_name

    def get_tool(self, tool_name: str) -> ToolDefinition:
        try:
            return self._by_name[tool_name]
        except KeyError as exc:
            raise KeyError(f"Unknown tool: {tool_name}") from exc

    def list_llm_tools(self, *, headless: bool = False) -> list[dict[str, Any]]:
        return [tool.to_llm_tool() for tool in self.list_tools(headless=headless)]

    def summary(self) -> dict[str, Any]:
        return {
            "service_count": len(self.list_services()),
            "tool_count": len(self._tools),
            "versions": self.service_versions(),
            "destructive_tools": [tool.tool_name for tool in self._tools if tool.destructive],
            "headless_tools": [tool.tool_name for tool in self._tools if tool.headless],
        }


@lru_cache(maxsize=1)
def load_registry() -> ToolRegistry:
    return ToolRegistry.load_from_disk()


def reload_registry() -> ToolRegistry:
    load_registry.cache_clear()
    return load_registry()


def validate_registry_on_startup() -> dict[str, Any]:
    from agent.tool_runner import registered_tool_names

    registry = reload_registry()
    catalog = {tool.tool_name for tool in registry.list_tools()}
    handlers = registered_tool_names()
    missing_handlers = sorted(catalog - handlers)
    if missing_handlers:
        raise ToolSpecValidationError(f"tools without handler: {', '.join(missing_handlers)}")
    orphan_handlers = sorted(handlers - catalog)
    if orphan_handlers:
        raise ToolSpecValidationError(f"handlers without catalog entry: {', '.join(orphan_handlers)}")
    return registry.summary()
