"""Stage-owned configuration with consumed-key enforcement.

A stage builder reads its `stages.<id>` mapping through a `ConfigNamespace`. Every
typed getter marks the key as consumed and records the effective value (defaults
included); `assert_consumed()` then rejects anything the stage never read, so a
misspelled key fails plan compilation instead of being silently ignored.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

_MISSING = object()

STAGE_CONFIG_PREFIX = "stages."


def _join_path(parent: str, key: str) -> str:
    return f"{parent}.{key}" if parent else key


def _type_name(value: Any) -> str:
    return type(value).__name__


@dataclass
class ConfigNamespace:
    data: Mapping[str, Any]
    path: str
    _consumed: set[str] = field(default_factory=set, init=False, repr=False)
    _children: dict[str, "ConfigNamespace"] = field(default_factory=dict, init=False, repr=False)
    _effective: dict[str, Any] = field(default_factory=dict, init=False, repr=False)

    @classmethod
    def empty(cls, *, path: str) -> "ConfigNamespace":
        return cls({}, path=path)

    def consumed_keys(self) -> tuple[str, ...]:
        return tuple(sorted(self._consumed))

    def unconsumed_keys(self) -> tuple[str, ...]:
        return tuple(sorted(k for k in self.data.keys() if k not in self._consumed))

    def assert_consumed(self) -> None:
        unknown = self.unconsumed_keys()
        if unknown:
            where = self.path or "<root>"
            consumed = ", ".join(self.consumed_keys()) or "<none>"
            detail = f"consumed: {consumed}"
            if where.startswith(STAGE_CONFIG_PREFIX):
                stage = where[len(STAGE_CONFIG_PREFIX) :].strip()
                if stage:
                    detail = f"stage: {stage}; {detail}"
            raise ValueError(f"Unknown config keys under {where}: {', '.join(unknown)} ({detail})")
        for child in self._children.values():
            child.assert_consumed()

    def effective_values(self) -> dict[str, Any]:
        out = dict(self._effective)
        for key, child in self._children.items():
            nested = child.effective_values()
            if nested:
                out[key] = nested
        return out

    def peek(self, key: str, default: Any = None) -> Any:
        """Read a raw value without consuming it (stage IO resolvers use this)."""

        return self.data.get(self._key(key), default)

    def _key(self, key: str) -> str:
        if not isinstance(key, str) or not key.strip():
            raise TypeError("ConfigNamespace key must be a non-empty string")
        return key.strip()

    def _where(self, key: str) -> str:
        return _join_path(self.path, key)

    def _take(self, key: str, default: Any) -> Any:
        if key in self._children:
            raise ValueError(f"{self._where(key)} already accessed as a nested namespace")
        if key not in self.data and default is _MISSING:
            raise ValueError(f"Missing required config key: {self._where(key)}")
        self._consumed.add(key)
        return self.data.get(key) if key in self.data else default

    def _keep(self, key: str, value: Any) -> Any:
        self._effective[key] = value
        return value

    def namespace(
        self,
        key: str,
        *,
        default: Mapping[str, Any] | None | object = _MISSING,
    ) -> "ConfigNamespace":
        name = self._key(key)
        existing = self._children.get(name)
        if existing is not None:
            return existing

        where = self._where(name)
        raw = self.data.get(name)
        if raw is None:
            if default is _MISSING:
                raise ValueError(f"Missing required config namespace: {where}")
            if default is not None and not isinstance(default, Mapping):
                raise TypeError(f"default for {where} must be a mapping or None")
            raw = default or {}
        elif not isinstance(raw, Mapping):
            raise TypeError(f"{where} must be a mapping (type={_type_name(raw)})")

        self._consumed.add(name)
        child = ConfigNamespace(dict(raw), path=where)
        self._children[name] = child
        return child

    def get_bool(self, key: str, *, default: bool | object = _MISSING) -> bool:
        name = self._key(key)
        if default is not _MISSING and not isinstance(default, bool):
            raise TypeError(f"{self._where(name)} default must be a boolean")
        raw = self._take(name, default)
        if not isinstance(raw, bool):
            raise TypeError(f"{self._where(name)} must be a boolean (type={_type_name(raw)})")
        return self._keep(name, raw)

    def get_int(
        self,
        key: str,
        *,
        default: int | object = _MISSING,
        min_value: int | None = None,
        max_value: int | None = None,
    ) -> int:
        name = self._key(key)
        where = self._where(name)
        if default is not _MISSING and (isinstance(default, bool) or not isinstance(default, int)):
            raise TypeError(f"{where} default must be an int")
        raw = self._take(name, default)
        # bool is an int subclass; `port: true` is a typo, not 1.
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise TypeError(f"{where} must be an int (type={_type_name(raw)})")
        if min_value is not None and raw < min_value:
            raise ValueError(f"{where} must be >= {min_value} (got {raw})")
        if max_value is not None and raw > max_value:
            raise ValueError(f"{where} must be <= {max_value} (got {raw})")
        return self._keep(name, int(raw))

    def get_str(
        self,
        key: str,
        *,
        default: str | None | object = _MISSING,
        allow_empty: bool = False,
        choices: Sequence[str] | None = None,
    ) -> str | None:
        name = self._key(key)
        where = self._where(name)
        if default is not _MISSING and default is not None and not isinstance(default, str):
            raise TypeError(f"{where} default must be a string or None")
        raw = self._take(name, default)
        if raw is None:
            return self._keep(name, None)
        if not isinstance(raw, str):
            raise TypeError(f"{where} must be a string (type={_type_name(raw)})")

        value = raw.strip()
        if not value and not allow_empty:
            raise ValueError(f"{where} cannot be empty")
        if choices is not None:
            allowed = sorted({str(item).strip() for item in choices if str(item).strip()})
            if value not in allowed:
                raise ValueError(
                    f"{where} must be one of: {', '.join(allowed) or '<none>'} (got {value!r})"
                )
        return self._keep(name, value)

    def get_list_str(
        self,
        key: str,
        *,
        default: Sequence[str] | object = _MISSING,
        allow_empty: bool = False,
    ) -> list[str]:
        """Parse an argv-style list; items are stripped and must be non-empty."""

        name = self._key(key)
        where = self._where(name)
        if default is not _MISSING and not isinstance(default, (list, tuple)):
            raise TypeError(f"{where} default must be a list[str]")
        raw = self._take(name, default)
        if not isinstance(raw, (list, tuple)):
            raise TypeError(f"{where} must be a list[str] (type={_type_name(raw)})")

        items: list[str] = []
        for idx, item in enumerate(raw):
            if not isinstance(item, str):
                raise TypeError(f"{where}[{idx}] must be a string (type={_type_name(item)})")
            if not item.strip():
                raise ValueError(f"{where}[{idx}] cannot be empty")
            items.append(item.strip())
        if not items and not allow_empty:
            raise ValueError(f"{where} cannot be empty")
        return self._keep(name, list(items))

    def get_str_mapping(
        self,
        key: str,
        *,
        default: Mapping[str, Any] | object = _MISSING,
    ) -> dict[str, str]:
        """Parse a flat mapping such as an environment block; scalars are rendered as strings."""

        name = self._key(key)
        where = self._where(name)
        if default is not _MISSING and not isinstance(default, Mapping):
            raise TypeError(f"{where} default must be a mapping")
        raw = self._take(name, default)
        if raw is None:
            raw = {}
        if not isinstance(raw, Mapping):
            raise TypeError(f"{where} must be a mapping (type={_type_name(raw)})")

        out: dict[str, str] = {}
        for item_key, item_value in raw.items():
            if not isinstance(item_key, str) or not item_key.strip():
                raise TypeError(f"{where} keys must be non-empty strings")
            if item_value is None or isinstance(item_value, (Mapping, list, tuple)):
                raise TypeError(f"{where}.{item_key} must be a scalar (type={_type_name(item_value)})")
            if isinstance(item_value, bool):
                out[item_key.strip()] = "true" if item_value else "false"
            else:
                out[item_key.strip()] = str(item_value)
        return self._keep(name, dict(out))
