from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from agent.registry import ToolSpecValidationError, load_registry, validate_registry_on_startup


def _flags(tool) -> str:
    names = ("destructive", "trusted_auto_execute", "headless", "targets_entity")
    return ",".join(name for name in names if getattr(tool, name)) or "-"


def tool_rows(service: str | None = None) -> list[dict]:
    return [
        {
            "service": tool.service,
            "version": tool.version,
            "tool_name": tool.tool_name,
            "required": list(tool.required_fields),
            "flags": _flags(tool),
        }
        for tool in load_registry().list_tools(service)
    ]


def render_text(summary: dict, rows: list[dict]) -> str:
    versions = " ".join(f"{service}@{version}" for service, version in sorted(summary["versions"].items()))
    lines = [f"catalog ok: {summary['tool_count']} tools ({versions})"]
    for row in rows:
        required = ",".join(row["required"]) or "-"
        lines.append(f"  {row['service']:<9} {row['tool_name']:<13} required={required:<16} flags={row['flags']}")
    return "\n".join(lines)


def main() -> int:
    parser = argparse.ArgumentParser(description="Check the calendar tool catalog against the registered handlers.")
    parser.add_argument("--json", action="store_true", help="print a JSON report")
    parser.add_argument("--service", default=None, help="only list tools of this service")
    args = parser.parse_args()

    try:
        summary = validate_registry_on_startup()
    except ToolSpecValidationError as exc:
        print(json.dumps({"ok": False, "error": str(exc)}) if args.json else f"catalog invalid: {exc}")
        return 1

    rows = tool_rows(args.service)
    if args.json:
        print(json.dumps({"ok": True, **summary, "tools": rows}, ensure_ascii=False))
    else:
        print(render_text(summary, rows))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
