"""
Row -> JSON helpers shared by task outputs, the dashboard and the façade.
"""
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, Optional
from uuid import UUID

from sqlalchemy import inspect


def to_number(value, fallback: float = 0.0) -> float:
    try:
        return float(value) if value is not None else fallback
    except (TypeError, ValueError):
        return fallback


def as_aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; they are stored as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def jsonable(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return as_aware(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def row_dict(obj, fields: Iterable[str]) -> Dict[str, Any]:
    """Plain JSON-safe dict of selected ORM attributes."""
    return {name: jsonable(getattr(obj, name)) for name in fields}


def model_dict(obj) -> Dict[str, Any]:
    """Every mapped column, keyed by its database column name."""
    mapper = inspect(obj).mapper
    return {
        attr.columns[0].name: jsonable(getattr(obj, attr.key))
        for attr in mapper.column_attrs
    }
