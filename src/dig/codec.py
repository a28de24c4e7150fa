"""Conversion between persisted JSON records and typed events."""

import json
import re
import types
from dataclasses import MISSING, fields, is_dataclass
from enum import Enum
from typing import Any, Union, get_args, get_origin, get_type_hints

from dig.errors import ValidationError
from dig.models import EVENT_CLASSES, BaseEvent, CustomEvent, EventType

# Namespaced custom types: "x-acme.deploy_note" or "acme:deploy_note"
CUSTOM_TYPE_PATTERN = re.compile(
    r"^(x-[a-z0-9_-]+\.[a-z0-9_.-]+|[a-z0-9_-]+:[a-z0-9_.-]+)$"
)

_BOOKKEEPING = frozenset({"seq", "ingested_at"})
_hints_cache: dict[type, dict[str, Any]] = {}


def _join(path: str, name: str) -> str:
    return f"{path}.{name}" if path else name


def _hints(cls: type) -> dict[str, Any]:
    if cls not in _hints_cache:
        _hints_cache[cls] = get_type_hints(cls)
    return _hints_cache[cls]


def _is_optional(tp: Any) -> bool:
    return get_origin(tp) in (Union, types.UnionType) and type(None) in get_args(tp)


def _decode(tp: Any, value: Any, path: str) -> Any:
    if tp is Any:
        return value
    if value is None:
        if _is_optional(tp):
            return None
        raise ValidationError(path, "must not be null")

    origin = get_origin(tp)
    if origin in (Union, types.UnionType):
        args = [a for a in get_args(tp) if a is not type(None)]
        if len(args) == 1:
            return _decode(args[0], value, path)
        return value
    if origin is list:
        if not isinstance(value, list):
            raise ValidationError(path, "must be a list")
        (item_tp,) = get_args(tp)
        return [_decode(item_tp, v, f"{path}[{i}]") for i, v in enumerate(value)]
    if origin is dict:
        if not isinstance(value, dict):
            raise ValidationError(path, "must be a mapping")
        _, value_tp = get_args(tp)
        return {str(k): _decode(value_tp, v, _join(path, str(k))) for k, v in value.items()}

    if isinstance(tp, type) and issubclass(tp, Enum):
        try:
            return tp(value)
        except ValueError:
            allowed = ", ".join(m.value for m in tp)
            raise ValidationError(path, f"must be one of: {allowed}") from None
    if is_dataclass(tp):
        return _decode_record(tp, value, path)
    if tp is bool:
        if not isinstance(value, bool):
            raise ValidationError(path, "must be a boolean")
        return value
    if tp is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(path, "must be an integer")
        return value
    if tp is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(path, "must be a number")
        return float(value)
    if tp is str:
        if not isinstance(value, str):
            raise ValidationError(path, "must be a string")
        return value
    return value


def _decode_record(cls: type, data: Any, path: str, skip: frozenset = frozenset()) -> Any:
    if not isinstance(data, dict):
        raise ValidationError(path or cls.__name__, "must be a mapping")
    hints = _hints(cls)
    init_fields = [f for f in fields(cls) if f.init and f.name not in _BOOKKEEPING]
    names = {f.name for f in init_fields}

    kwargs: dict[str, Any] = {}
    extra: dict[str, Any] = {}
    for key, value in data.items():
        if key in skip:
            continue
        if key in names and key != "extra":
            kwargs[key] = _decode(hints[key], value, _join(path, key))
        elif "extra" in names:
            extra[key] = value
        else:
            raise ValidationError(_join(path, key), "unknown field")

    for f in init_fields:
        if f.name in kwargs or f.name == "extra":
            continue
        if f.default is MISSING and f.default_factory is MISSING:
            raise ValidationError(_join(path, f.name), "is required")

    if "extra" in names:
        kwargs["extra"] = extra
    return cls(**kwargs)


def event_class_for(event_type: str) -> type[BaseEvent]:
    """Resolve a type tag to its event class."""
    try:
        return EVENT_CLASSES[EventType(event_type)]
    except ValueError:
        if CUSTOM_TYPE_PATTERN.match(event_type):
            return CustomEvent
        raise ValidationError(
            "type", f"unknown event type '{event_type}' (custom types must be namespaced)"
        ) from None


def event_from_dict(data: dict[str, Any]) -> BaseEvent:
    """Decode a persisted record into its typed event."""
    if not isinstance(data, dict):
        raise ValidationError("event", "must be a JSON object")
    event_type = data.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise ValidationError("type", "is required")

    cls = event_class_for(event_type)
    if cls is CustomEvent:
        body = dict(data)
        body["custom_type"] = body.pop("type")
        return _decode_record(CustomEvent, body, "")
    return _decode_record(cls, data, "", skip=frozenset({"type"}))


def event_from_json(raw: str) -> BaseEvent:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError("event", f"invalid JSON: {e}") from e
    return event_from_dict(data)


def _encode(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        out: dict[str, Any] = {}
        for f in fields(value):
            if f.name in _BOOKKEEPING or f.name == "extra":
                continue
            v = getattr(value, f.name)
            if v is None:
                continue
            out[f.name] = _encode(v)
        return out
    if isinstance(value, list):
        return [_encode(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _encode(v) for k, v in value.items()}
    return value


def event_to_dict(event: BaseEvent) -> dict[str, Any]:
    """Persisted record format. None-valued optional fields are omitted."""
    body = _encode(event)
    body.pop("custom_type", None)
    record = {"type": event.event_type, **body}
    for key, value in event.extra.items():
        record.setdefault(key, value)
    return record


def canonical_json(event: BaseEvent) -> str:
    """Stable serialization used for storage and content comparison."""
    return json.dumps(event_to_dict(event), sort_keys=True, separators=(",", ":"))
