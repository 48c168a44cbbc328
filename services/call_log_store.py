from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Optional

from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
from azure.data.tables import TableServiceClient, UpdateMode

from shared.config import get_setting

logger = logging.getLogger(__name__)

CALL_LOGS_TABLE = get_setting("CALL_LOGS_TABLE", "DialerCallLogs")
TERMINAL_STATUSES = {"completed", "busy", "failed", "no-answer", "canceled", "cancelled"}

_service_client = None
_table_client = None
_table_lock = Lock()
_table_init_failed = False

# Used when no storage connection string is configured (local dev, tests).
_memory_store: Dict[str, Dict[str, dict]] = {}
_memory_lock = Lock()


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _get_service_client():
    global _service_client, _table_init_failed
    if _table_init_failed:
        return None
    if _service_client is not None:
        return _service_client
    conn_str = get_setting("AZURE_STORAGE_CONNECTION_STRING")
    if not conn_str:
        return None
    try:
        _service_client = TableServiceClient.from_connection_string(conn_str)
        return _service_client
    except ValueError as exc:
        _table_init_failed = True
        logger.warning("Failed to initialize call log TableServiceClient: %s", exc)
        return None


def _get_table_client():
    global _table_client
    if _table_client is not None:
        return _table_client
    service = _get_service_client()
    if service is None:
        return None
    with _table_lock:
        if _table_client is not None:
            return _table_client
        client = service.get_table_client(CALL_LOGS_TABLE)
        try:
            client.create_table()
        except ResourceExistsError:
            pass
        _table_client = client
        return client


def _escape_odata(value: str) -> str:
    return str(value or "").replace("'", "''")


def _deserialize_entity(entity: dict | None) -> Optional[dict]:
    if not entity:
        return None
    payload = {
        "userId": str(entity.get("PartitionKey") or ""),
        "callSid": str(entity.get("RowKey") or ""),
    }
    for key, value in entity.items():
        if key in {"PartitionKey", "RowKey", "Timestamp", "etag"}:
            continue
        payload[key] = value
    return payload


def _sort_key(row: dict) -> str:
    return str(row.get("startedAt") or row.get("createdAt") or row.get("updatedAt") or "")


def _memory_upsert(user_id: str, call_sid: str, payload: dict) -> dict:
    with _memory_lock:
        partition = _memory_store.setdefault(user_id, {})
        base = partition.get(call_sid, {})
        merged = {**base, **payload}
        if base.get("startedAt"):
            merged["startedAt"] = base["startedAt"]
        merged["userId"] = user_id
        merged["callSid"] = call_sid
        merged["updatedAt"] = _utc_now_iso()
        if not merged.get("createdAt"):
            merged["createdAt"] = merged["updatedAt"]
        partition[call_sid] = merged
        return dict(merged)


def reset_memory_store_for_tests() -> None:
    with _memory_lock:
        _memory_store.clear()


def build_status_patch(form: dict, now_iso: Optional[str] = None) -> dict:
    """Translate a Twilio status callback form into a call log patch."""
    now_iso = now_iso or _utc_now_iso()
    call_status = str(form.get("CallStatus") or form.get("DialCallStatus") or "").strip().lower()
    patch: dict = {
        "status": call_status or "unknown",
        "to": str(form.get("To") or "").strip(),
        "from": str(form.get("From") or "").strip(),
        "direction": str(form.get("Direction") or "outbound").strip(),
        "updatedAt": now_iso,
    }
    if call_status in {"queued", "initiated", "ringing", "in-progress"}:
        patch["startedAt"] = now_iso
    if call_status in TERMINAL_STATUSES:
        patch["endedAt"] = now_iso
    duration_raw = form.get("CallDuration") or form.get("DialCallDuration")
    if duration_raw not in (None, ""):
        try:
            patch["duration"] = max(0, int(duration_raw))
        except (TypeError, ValueError):
            pass
    return patch


def upsert_call_log(user_id: str, call_sid: str, patch: dict) -> dict:
    safe_user = str(user_id or "").strip()
    safe_sid = str(call_sid or "").strip()
    if not safe_user or not safe_sid:
        return {}

    client = _get_table_client()
    if client is None:
        return _memory_upsert(safe_user, safe_sid, patch or {})

    try:
        existing = client.get_entity(partition_key=safe_user, row_key=safe_sid)
    except ResourceNotFoundError:
        existing = None
    fields = {
        **{
            k: v
            for k, v in (existing or {}).items()
            if k not in {"PartitionKey", "RowKey", "Timestamp", "etag"}
        },
        **(patch or {}),
        "updatedAt": _utc_now_iso(),
    }
    if existing and existing.get("startedAt"):
        fields["startedAt"] = existing["startedAt"]
    if not fields.get("createdAt"):
        fields["createdAt"] = fields["updatedAt"]
    entity = {"PartitionKey": safe_user, "RowKey": safe_sid, **fields}
    client.upsert_entity(entity=entity, mode=UpdateMode.MERGE)
    return _deserialize_entity(entity) or {}


def get_call_log(user_id: str, call_sid: str) -> Optional[dict]:
    safe_user = str(user_id or "").strip()
    safe_sid = str(call_sid or "").strip()
    if not safe_user or not safe_sid:
        return None
    client = _get_table_client()
    if client is not None:
        try:
            return _deserialize_entity(client.get_entity(partition_key=safe_user, row_key=safe_sid))
        except ResourceNotFoundError:
            return None
    with _memory_lock:
        entry = _memory_store.get(safe_user, {}).get(safe_sid)
        return dict(entry) if entry else None


def list_call_logs(user_id: str, *, limit: int = 25) -> list[dict]:
    safe_user = str(user_id or "").strip()
    safe_limit = max(1, min(100, int(limit or 25)))
    if not safe_user:
        return []

    client = _get_table_client()
    if client is not None:
        filter_expr = f"PartitionKey eq '{_escape_odata(safe_user)}'"
        rows = [_deserialize_entity(entity) for entity in client.query_entities(query_filter=filter_expr)]
        rows = [row for row in rows if row]
    else:
        with _memory_lock:
            rows = [dict(item) for item in _memory_store.get(safe_user, {}).values()]
    rows.sort(key=_sort_key, reverse=True)
    return rows[:safe_limit]
