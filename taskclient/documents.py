"""Read-only view over JSON documents whose shape varies by call."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Any, Callable, TypeVar

from pydantic import JsonValue, TypeAdapter

T = TypeVar("T")

_object_adapter: TypeAdapter[dict[str, JsonValue]] = TypeAdapter(dict[str, JsonValue])


class JsonDocument(Mapping[str, JsonValue]):
    def __init__(self, data: Mapping[str, JsonValue] | None = None) -> None:
        self._data: dict[str, JsonValue] = dict(data or {})

    @classmethod
    def from_json(cls, raw: bytes | str) -> JsonDocument:
        """Parse a JSON object; raises pydantic.ValidationError for anything else."""
        return cls(_object_adapter.validate_json(raw))

    def __getitem__(self, key: str) -> JsonValue:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"JsonDocument({self._data!r})"

    def value(self, key: str, kind: Callable[[Any], T] | None = None) -> T | JsonValue:
        """Return the value at key converted with kind, or None when absent or null."""
        raw = self._data.get(key)
        if raw is None or kind is None:
            return raw
        return kind(raw)

    def document(self, key: str) -> JsonDocument | None:
        raw = self._data.get(key)
        if not isinstance(raw, dict):
            return None
        return JsonDocument(raw)

    def to_dict(self) -> dict[str, JsonValue]:
        return dict(self._data)
