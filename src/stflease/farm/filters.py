"""Device-selection criteria for farm reservations."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from string import Template
from typing import Any

from stflease.shared.exceptions import EmptyFilterError, InvalidRegexError, ValidationError

# A value written as /pattern/ is a regular expression rather than a literal.
_REGEX_ESCAPED_VALUE = re.compile(r"^/(.+)/$", re.DOTALL)


def expand_variables(value: str, variables: Mapping[str, str]) -> str:
    """Substitute ``$VAR`` and ``${VAR}`` references; unknown ones stay literal."""
    return Template(value).safe_substitute(variables)


def parse_condition(raw: str) -> tuple[str, str]:
    """Split a ``name=value`` condition string."""
    name, sep, value = raw.partition("=")
    if not sep:
        raise ValidationError(f"device condition must be name=value: {raw!r}")
    return name.strip(), value.strip()


class FilterSpec:
    """Validated, variable-expanded attribute → value criteria."""

    def __init__(self, conditions: dict[str, str]) -> None:
        self._conditions = dict(conditions)
        self._patterns: dict[str, re.Pattern[str]] = {}
        for name, value in self._conditions.items():
            match = _REGEX_ESCAPED_VALUE.match(value)
            if match:
                self._patterns[name] = re.compile(match.group(1))

    @classmethod
    def validate(
        cls,
        raw: Mapping[str, Any] | Iterable[tuple[str, Any]],
        variables: Mapping[str, str] | None = None,
    ) -> FilterSpec:
        """Expand variables in ``raw`` and validate the result.

        Args:
            raw: Attribute → expected value pairs, in priority order.
            variables: Job environment and build variables used for expansion.

        Returns:
            A ``FilterSpec`` ready for matching.

        Raises:
            EmptyFilterError: No attributes were given.
            ValidationError: An attribute name or value is blank.
            InvalidRegexError: A ``/regex/`` value does not compile.
        """
        pairs = raw.items() if isinstance(raw, Mapping) else raw
        variables = variables or {}

        conditions: dict[str, str] = {}
        for name, value in pairs:
            name = expand_variables(str(name), variables).strip()
            value = expand_variables("" if value is None else str(value), variables).strip()
            if not name or not value:
                raise ValidationError(f"blank device condition: {name!r}={value!r}")
            match = _REGEX_ESCAPED_VALUE.match(value)
            if match:
                try:
                    re.compile(match.group(1))
                except re.error as exc:
                    raise InvalidRegexError(f"invalid regexp for {name!r}: {value} ({exc})") from exc
            conditions[name] = value

        if not conditions:
            raise EmptyFilterError("device condition set is empty")
        return cls(conditions)

    @property
    def conditions(self) -> dict[str, str]:
        return dict(self._conditions)

    def matches(self, record: Mapping[str, Any]) -> bool:
        """True when every condition holds for a farm device record."""
        for name, expected in self._conditions.items():
            if name not in record:
                return False
            actual = _as_text(record[name])
            pattern = self._patterns.get(name)
            if pattern is not None:
                if pattern.fullmatch(actual) is None:
                    return False
            elif actual != expected:
                return False
        return True

    def filter(self, records: Iterable[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
        return [r for r in records if self.matches(r)]

    def __len__(self) -> int:
        return len(self._conditions)

    def __repr__(self) -> str:
        return f"FilterSpec({self._conditions!r})"


def _as_text(value: Any) -> str:
    # Farm JSON booleans compare as their lowercase literal.
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)
