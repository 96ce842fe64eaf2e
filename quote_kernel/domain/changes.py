"""
Explicit field-change sets for PATCH-style updates.

A FieldChanges holds only the fields the caller actually sent.  A key
mapped to ``None`` means "clear this field"; an absent key means "leave it
alone".
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping

from quote_kernel.exceptions import ValidationError


@dataclass(frozen=True)
class FieldChanges:
    """Immutable set of ``field -> new value`` pairs."""

    values: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    @classmethod
    def from_payload(
        cls,
        payload: Mapping[str, Any],
        allowed: Iterable[str],
        required_non_null: Iterable[str] = (),
    ) -> FieldChanges:
        """
        Build from a request payload.

        Raises:
            ValidationError: unknown fields, or ``None`` for a field that
                cannot be cleared.
        """
        allowed_set = set(allowed)
        errors = [f"{key} cannot be changed" for key in payload if key not in allowed_set]
        errors.extend(
            f"{key} cannot be cleared"
            for key in required_non_null
            if key in payload and payload[key] is None
        )
        if errors:
            raise ValidationError("Invalid update", errors)
        return cls(dict(payload))

    def __contains__(self, name: object) -> bool:
        return name in self.values

    def __iter__(self) -> Iterator[str]:
        return iter(self.values)

    def __len__(self) -> int:
        return len(self.values)

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def is_cleared(self, name: str) -> bool:
        return name in self.values and self.values[name] is None

    def without(self, *names: str) -> FieldChanges:
        return FieldChanges({k: v for k, v in self.values.items() if k not in names})

    def apply_to(self, target: Any) -> dict[str, dict[str, Any]]:
        """Set each present field on ``target``; return ``{field: {old, new}}`` for real changes."""
        diff: dict[str, dict[str, Any]] = {}
        for name, new in self.values.items():
            old = getattr(target, name)
            if old != new:
                setattr(target, name, new)
                diff[name] = {"old": old, "new": new}
        return diff
