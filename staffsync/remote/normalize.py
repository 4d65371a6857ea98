"""Translation of raw remote payloads into Records.

The upstream service uses two field schemas: ``{name, age, salary}`` on
write endpoints and ``{employee_name, employee_age, employee_salary}`` on
read endpoints, with numerics sometimes sent as strings. Normalization
accepts both and never raises; bad input only degrades to defaults.
"""

from typing import Any

from ..models import Record, SyncState


def _coerce_int(value: Any) -> int | None:
    """Coerce an int, integral float, or numeric string to int."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    if isinstance(value, str):
        text = value.strip()
        try:
            return int(text)
        except ValueError:
            pass
        try:
            number = float(text)
        except ValueError:
            return None
        return int(number) if number.is_integer() else None
    return None


def _first_int(raw: dict[str, Any], *keys: str) -> int | None:
    for key in keys:
        if raw.get(key) is not None:
            coerced = _coerce_int(raw[key])
            if coerced is not None:
                return coerced
    return None


def _first_str(raw: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, str):
            return value
    return None


def normalize_record(
    raw: Any, sync_state: SyncState = SyncState.SYNCED
) -> Record:
    """Build a Record from either remote schema.

    Args:
        raw: Payload from the remote service.
        sync_state: State to tag the result with.

    Returns:
        Record with missing numerics set to 0 and missing name set to "".
    """
    if not isinstance(raw, dict):
        raw = {}

    return Record(
        id=_first_int(raw, "id"),
        name=_first_str(raw, "employee_name", "name") or "",
        age=_first_int(raw, "employee_age", "age") or 0,
        salary=_first_int(raw, "employee_salary", "salary") or 0,
        sync_state=sync_state,
    )


def normalize_records(raw: Any) -> list[Record]:
    """Normalize a collection payload. Non-list input yields no records."""
    if not isinstance(raw, list):
        return []
    return [normalize_record(item) for item in raw]
