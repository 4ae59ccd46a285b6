from __future__ import annotations

import logging
import threading
import time
from typing import Any

from supabase import create_client

from agent.errors import StorageError
from app.core.config import get_settings

logger = logging.getLogger("chronos-backend.siri_queue")

_QUEUE: list[dict[str, Any]] = []
_LOCK = threading.Lock()


def _storage_mode() -> str:
    try:
        settings = get_settings()
        mode = (settings.siri_queue_storage or "auto").strip().lower()
    except Exception:
        return "memory"
    if mode not in {"auto", "db", "memory"}:
        mode = "auto"
    if mode == "auto" and (not settings.supabase_url or not settings.supabase_service_role_key):
        return "memory"
    return mode


def _ttl_seconds() -> int:
    try:
        return max(1, int(get_settings().siri_queue_ttl_seconds))
    except Exception:
        return 600


def _table_name() -> str:
    try:
        value = (get_settings().siri_queue_table or "siri_messages").strip()
    except Exception:
        value = "siri_messages"
    return value or "siri_messages"


def _build_client():
    settings = get_settings()
    return create_client(settings.supabase_url, settings.supabase_service_role_key)


def _mem_push(entry: dict[str, Any]) -> None:
    with _LOCK:
        _QUEUE.append(entry)


def _mem_pop_all(now: float) -> list[dict[str, Any]]:
    cutoff = now - _ttl_seconds()
    with _LOCK:
        items = [item for item in _QUEUE if float(item.get("timestamp", 0)) >= cutoff]
        _QUEUE.clear()
    return items


def _db_push(entry: dict[str, Any]) -> None:
    _build_client().table(_table_name()).insert(entry).execute()


def _db_pop_all(now: float) -> list[dict[str, Any]]:
    client = _build_client()
    table = _table_name()
    cutoff = now - _ttl_seconds()
    response = client.table(table).select("*").gte("timestamp", cutoff).order("timestamp").execute()
    rows = response.data or []
    ids = [row["id"] for row in rows if row.get("id") is not None]
    if ids:
        client.table(table).delete().in_("id", ids).execute()
    client.table(table).delete().lt("timestamp", cutoff).execute()
    return [{"text": str(row.get("text", "")), "timestamp": float(row.get("timestamp") or 0)} for row in rows]


def push_message(text: str, *, now: float | None = None) -> dict[str, Any]:
    entry = {"text": text.strip(), "timestamp": now if now is not None else time.time()}
    mode = _storage_mode()
    if mode == "memory":
        _mem_push(entry)
        return entry
    try:
        _db_push(entry)
        return entry
    except Exception as exc:
        if mode == "db":
            raise StorageError(f"siri queue push failed: {exc}") from exc
        logger.warning("siri queue db push failed, fallback to memory: %s", exc)
    _mem_push(entry)
    return entry


def pop_all_messages(*, now: float | None = None) -> list[dict[str, Any]]:
    """Drain every unexpired dictated message, oldest first."""
    now = now if now is not None else time.time()
    mode = _storage_mode()
    if mode == "memory":
        return _mem_pop_all(now)
    try:
        items = _db_pop_all(now)
    except Exception as exc:
        if mode == "db":
            raise StorageError(f"siri queue pop failed: {exc}") from exc
        logger.warning("siri queue db pop failed, fallback to memory: %s", exc)
        return _mem_pop_all(now)
    # Messages pushed while the db was unreachable are still delivered.
    return items + _mem_pop_all(now)
