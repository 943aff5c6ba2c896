"""
Normalization helpers shared by the message and meeting components.
"""

import logging
from datetime import timedelta
from typing import Any, Iterable, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def extract_collection(payload: Any, key: str) -> list[dict]:
    """
    Pull a list of records out of a remote response.

    The backend answers either ``{key: [...]}`` or ``{"data": {key: [...]}}``;
    anything else is treated as an empty collection.

    Args:
        payload: Decoded JSON response body
        key: Collection name ("messages", "meetings")

    Returns:
        List of raw record dicts
    """
    if not isinstance(payload, dict):
        return []
    records = payload.get(key)
    if isinstance(records, list):
        return records
    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get(key), list):
        return data[key]
    return []


def extract_record(payload: Any, key: str) -> Optional[dict]:
    """Pull a single record (``{key: {...}}`` or ``{"data": {key: {...}}}``) out of a response."""
    if not isinstance(payload, dict):
        return None
    record = payload.get(key)
    if isinstance(record, dict):
        return record
    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get(key), dict):
        return data[key]
    return None


def normalize_record(record: dict, model: Type[ModelT]) -> Optional[ModelT]:
    """Validate one raw record, logging and dropping it if malformed."""
    try:
        return model.model_validate(record)
    except ValidationError as e:
        logger.warning(f"Dropping malformed {model.__name__} record: {e.error_count()} error(s)")
        logger.debug(f"Malformed record: {record!r}")
        return None


def normalize_records(records: Iterable[dict], model: Type[ModelT]) -> list[ModelT]:
    normalized = []
    for record in records:
        item = normalize_record(record, model)
        if item is not None:
            normalized.append(item)
    return normalized


def index_by_id(items: Iterable[ModelT]) -> dict[str, ModelT]:
    """Index items by their ``id``; later items win on duplicate ids."""
    return {item.id: item for item in items}


def format_remaining(delta: timedelta) -> str:
    """
    Render a positive time span as a compact countdown label.

    Examples: "2d 3h 15m", "1h 5m 9s", "59m 59s".
    """
    total = int(delta.total_seconds())
    days, rest = divmod(total, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, seconds = divmod(rest, 60)

    if days > 0:
        return f"{days}d {hours}h {minutes}m"
    if hours > 0:
        return f"{hours}h {minutes}m {seconds}s"
    return f"{minutes}m {seconds}s"
