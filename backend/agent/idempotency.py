from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Any

from supabase import create_client

from agent.errors import IdempotencyConflictError, StorageError
from agent.types import IdempotencyRecord, ResultSummary
from app.core.config import get_settings

logger = logging.getLogger("chronos-backend.idempotency")

STATUS_PROCESSING = "processing"
STATUS_SUCCEEDED = "succeeded"
STATUS_FAILED = "failed"

_RECORDS: dict[str, IdempotencyRecord] = {}
_LOCK = threading.Lock()
_SUMMARY_COLUMNS = {
    "action_type": "action_type",
    "target_calendar_id": "calendar_id",
    "target_entity_id": "entity_id",
    "start": "start",
    "end": "end",
}


def _storage_mode() -> str:
    try:
        settings = get_settings()
        mode = (settings.idempotency_storage or "auto").strip().lower()
    except Exception:
        return "memory"
    if mode not in {"auto", "db", "memory", "off"}:
        mode = "auto"
    if mode == "auto" and (not settings.supabase_url or not settings.supabase_service_role_key):
        return "memory"
    return mode


def _ttl_seconds() -> int:
    try:
        return max(60, int(get_settings().idempotency_ttl_seconds))
    except Exception:
        return 86400 * 7


def _stale_seconds() -> int:
    try:
        return max(1, int(get_settings().idempotency_processing_stale_seconds))
    except Exception:
        return 300


def _table_name() -> str:
    try:
        value = (get_settings().idempotency_table or "idempotency_records").strip()
    except Exception:
        value = "idempotency_records"
    return value or "idempotency_records"


def _build_client():
    settings = get_settings()
    return create_client(settings.supabase_url, settings.supabase_service_role_key)


def is_available() -> bool:
    return _storage_mode() != "off"


def _is_expired(record: IdempotencyRecord, now: float) -> bool:
    return bool(record.expires_at) and record.expires_at < now


def is_processing_fresh(record: IdempotencyRecord, now: float | None = None) -> bool:
    """True while another attempt holds the key and has not gone stale."""
    now = now if now is not None else time.time()
    return record.status == STATUS_PROCESSING and record.updated_at + _stale_seconds() >= now


def _merge(existing: IdempotencyRecord | None, key: str, changes: dict[str, Any], now: float) -> IdempotencyRecord:
    base = existing or IdempotencyRecord(key=key, status=STATUS_PROCESSING, created_at=now)
    return replace(base, **changes, updated_at=now, expires_at=now + _ttl_seconds())


def _record_to_row(record: IdempotencyRecord) -> dict[str, Any]:
    row: dict[str, Any] = {
        "key": record.key,
        "status": record.status,
        "last_error": record.last_error,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
        "expires_at": record.expires_at,
    }
    summary = record.result_summary
    for attr, column in _SUMMARY_COLUMNS.items():
        row[column] = getattr(summary, attr) if summary else None
    return row


def _record_from_row(row: dict[str, Any]) -> IdempotencyRecord:
    summary = None
    if row.get("entity_id"):
        summary = ResultSummary(
            action_type=str(row.get("action_type") or ""),
            target_calendar_id=str(row.get("calendar_id") or ""),
            target_entity_id=str(row.get("entity_id") or ""),
            start=row.get("start"),
            end=row.get("end"),
        )

    def _float(name: str) -> float:
        try:
            return float(row.get(name) or 0.0)
        except (TypeError, ValueError):
            return 0.0

    return IdempotencyRecord(
        key=str(row.get("key", "")),
        status=str(row.get("status") or STATUS_PROCESSING),
        result_summary=summary,
        last_error=row.get("last_error"),
        created_at=_float("created_at"),
        updated_at=_float("updated_at"),
        expires_at=_float("expires_at"),
    )


def _mem_get(key: str, now: float) -> IdempotencyRecord | None:
    record = _RECORDS.get(key)
    if record and _is_expired(record, now):
        _RECORDS.pop(key, None)
        return None
    return record


def _mem_set(key: str, changes: dict[str, Any], now: float) -> IdempotencyRecord:
    with _LOCK:
        record = _merge(_mem_get(key, now), key, changes, now)
        _RECORDS[key] = record
        return record


def _mem_claim(key: str, now: float) -> IdempotencyRecord | None:
    with _LOCK:
        existing = _mem_get(key, now)
        if existing and existing.status == STATUS_SUCCEEDED:
            return existing
        if existing and is_processing_fresh(existing, now):
            raise IdempotencyConflictError(key)
        _RECORDS[key] = _merge(existing, key, {"status": STATUS_PROCESSING, "last_error": None}, now)
        return None


def _db_get(key: str, now: float) -> IdempotencyRecord | None:
    client = _build_client()
    response = client.table(_table_name()).select("*").eq("key", key).limit(1).execute()
    rows = response.data or []
    if not rows:
        return None
    record = _record_from_row(rows[0])
    if _is_expired(record, now):
        return None
    return record


def _db_set(key: str, changes: dict[str, Any], now: float) -> IdempotencyRecord:
    record = _merge(_db_get(key, now), key, changes, now)
    _build_client().table(_table_name()).upsert(_record_to_row(record), on_conflict="key").execute()
    return record


def _db_claim(key: str, now: float) -> IdempotencyRecord | None:
    client = _build_client()
    table = _table_name()
    existing = _db_get(key, now)
    if existing is None:
        fresh = _merge(None, key, {"status": STATUS_PROCESSING}, now)
        try:
            client.table(table).insert(_record_to_row(fresh)).execute()
            return None
        except Exception as exc:
            # Unique key violation: another request inserted first.
            logger.info("idempotency insert lost race key=%s error=%s", key, exc)
            existing = _db_get(key, now)
            if existing is None:
                raise StorageError(f"idempotency claim failed for {key}") from exc

    if existing.status == STATUS_SUCCEEDED:
        return existing
    if is_processing_fresh(existing, now):
        raise IdempotencyConflictError(key)

    claimed = _merge(existing, key, {"status": STATUS_PROCESSING, "last_error": None}, now)
    query = client.table(table).update(_record_to_row(claimed)).eq("key", key).eq("status", existing.status)
    response = query.eq("updated_at", existing.updated_at).execute()
    if not (response.data or []):
        raise IdempotencyConflictError(key)
    return None


def get_idempotency_record(key: str) -> IdempotencyRecord | None:
    mode = _storage_mode()
    now = time.time()
    if mode == "off":
        return None
    if mode == "memory":
        return _mem_get(key, now)
    try:
        return _db_get(key, now)
    except Exception as exc:
        if mode == "db":
            raise StorageError(f"idempotency read failed: {exc}") from exc
        logger.warning("idempotency db read failed, fallback to memory: %s", exc)
    return _mem_get(key, now)


def set_idempotency_record(key: str, **changes: Any) -> IdempotencyRecord | None:
    """Merge `changes` into the record for `key`, creating it in processing state."""
    mode = _storage_mode()
    now = time.time()
    if mode == "off":
        return None
    if mode == "memory":
        return _mem_set(key, changes, now)
    try:
        return _db_set(key, changes, now)
    except Exception as exc:
        if mode == "db":
            raise StorageError(f"idempotency write failed: {exc}") from exc
        logger.warning("idempotency db write failed, fallback to memory: %s", exc)
    return _mem_set(key, changes, now)


def claim_idempotency_key(key: str) -> IdempotencyRecord | None:
    """Atomically move `key` into processing.

    Returns the stored record when the key already succeeded (replay),
    raises IdempotencyConflictError while another attempt is in flight,
    and returns None once this caller owns the attempt.
    """
    mode = _storage_mode()
    now = time.time()
    if mode == "off":
        return None
    if mode == "memory":
        return _mem_claim(key, now)
    try:
        return _db_claim(key, now)
    except IdempotencyConflictError:
        raise
    except Exception as exc:
        if mode == "db":
            raise StorageError(f"idempotency claim failed: {exc}") from exc
        logger.warning("idempotency db claim failed, fallback to memory: %s", exc)
    return _mem_claim(key, now)


def mark_succeeded(key: str, summary: ResultSummary) -> IdempotencyRecord | None:
    return set_idempotency_record(key, status=STATUS_SUCCEEDED, result_summary=summary, last_error=None)


def mark_failed(key: str, error: str) -> IdempotencyRecord | None:
    return set_idempotency_record(key, status=STATUS_FAILED, last_error=error[:500])


def purge_expired(now: float | None = None) -> int:
    now = now if now is not None else time.time()
    with _LOCK:
        expired = [key for key, record in _RECORDS.items() if _is_expired(record, now)]
        for key in expired:
            _RECORDS.pop(key, None)
    mode = _storage_mode()
    if mode in {"auto", "db"}:
        try:
            _build_client().table(_table_name()).delete().lt("expires_at", now).execute()
        except Exception as exc:
            logger.warning("idempotency db purge failed: %s", exc)
    return len(expired)
