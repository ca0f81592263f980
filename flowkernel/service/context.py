"""Run-scoped execution context and ``{{variable}}`` interpolation."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

PLACEHOLDER_PATTERN = re.compile(r"\{\{([^{}]+)\}\}")

_MISSING = object()


def input_key(node_id: str) -> str:
    """Context key holding the value staged for a node by its predecessor."""
    return f"{node_id}_input"


@dataclass(frozen=True)
class ContextEntry:
    key: str
    value: Any
    writer: Optional[str]
    version: int


class ExecutionContext:
    """Append-only versioned key/value store for one workflow run.

    Every write appends an entry to the arena; the index points each key at
    its latest entry. Earlier versions stay readable through ``history``.
    """

    def __init__(self, initial: Optional[Mapping[str, Any]] = None) -> None:
        self._entries: List[ContextEntry] = []
        self._index: Dict[str, int] = {}
        for key, value in (initial or {}).items():
            self.set(key, value)

    def set(self, key: str, value: Any, *, writer: Optional[str] = None) -> None:
        self._entries.append(
            ContextEntry(key=key, value=value, writer=writer, version=len(self._entries))
        )
        self._index[key] = len(self._entries) - 1

    def setdefault(self, key: str, value: Any, *, writer: Optional[str] = None) -> Any:
        if key in self._index:
            return self.get(key)
        self.set(key, value, writer=writer)
        return value

    def get(self, key: str, default: Any = None) -> Any:
        position = self._index.get(key)
        if position is None:
            return default
        return self._entries[position].value

    def __getitem__(self, key: str) -> Any:
        position = self._index.get(key)
        if position is None:
            raise KeyError(key)
        return self._entries[position].value

    def __contains__(self, key: object) -> bool:
        return key in self._index

    def __iter__(self) -> Iterator[str]:
        return iter(self._index)

    def __len__(self) -> int:
        return len(self._index)

    def keys(self) -> List[str]:
        return list(self._index)

    def writer_of(self, key: str) -> Optional[str]:
        position = self._index.get(key)
        return None if position is None else self._entries[position].writer

    def history(self, key: str) -> List[ContextEntry]:
        return [entry for entry in self._entries if entry.key == key]

    @property
    def version(self) -> int:
        return len(self._entries)

    def snapshot(self) -> Dict[str, Any]:
        """Latest value per key as a plain dict."""
        return {key: self._entries[pos].value for key, pos in self._index.items()}

    def lookup(self, path: str, default: Any = None) -> Any:
        """Resolve an exact key, falling back to a dotted path walk."""
        value = _lookup(self, path)
        return default if value is _MISSING else value


def _walk(root: Any, parts: Sequence[str]) -> Any:
    current = root
    for part in parts:
        if isinstance(current, Mapping):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, Sequence) and not isinstance(current, (str, bytes)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return _MISSING
        else:
            return _MISSING
    return current


def _lookup(context: Any, name: str) -> Any:
    if name in context:
        return context[name]
    if "." not in name:
        return _MISSING
    head, *rest = name.split(".")
    if head not in context:
        return _MISSING
    return _walk(context[head], rest)


def lookup_path(context: Any, name: str) -> Tuple[bool, Any]:
    """Return ``(found, value)`` for a key or dotted path in any mapping."""
    value = _lookup(context, name.strip())
    if value is _MISSING:
        return False, None
    return True, value


def stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def resolve(template: str, context: Any) -> str:
    """Replace ``{{name}}`` placeholders with values from ``context``.

    Placeholders whose variable is missing (or ``None``) are left as literal
    text. Substituted values are not scanned again, so resolving an already
    resolved string changes nothing further.
    """
    if not isinstance(template, str) or "{{" not in template:
        return template

    def _replace(match: re.Match) -> str:
        found, value = lookup_path(context, match.group(1))
        if not found or value is None:
            return match.group(0)
        return stringify(value)

    return PLACEHOLDER_PATTERN.sub(_replace, template)


def placeholders(template: str) -> List[str]:
    """Variable names referenced by a template, in order of appearance."""
    if not isinstance(template, str):
        return []
    return [match.group(1).strip() for match in PLACEHOLDER_PATTERN.finditer(template)]
