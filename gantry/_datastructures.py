"""
Core data structures for request handling.

Provides:
- MultiDict: multi-value mapping for query parameters
- Headers: case-insensitive view over ASGI raw headers
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import parse_qsl


# ============================================================================
# MultiDict
# ============================================================================

class MultiDict(Mapping[str, str]):
    """
    Read-mostly mapping where keys may repeat.

    Indexing returns the *first* value, like a plain query-string dict;
    ``get_all`` returns every value in arrival order.
    """

    def __init__(self, items: Optional[Union[Sequence[Tuple[str, str]], Mapping[str, Union[str, List[str]]]]] = None):
        self._data: Dict[str, List[str]] = {}
        if not items:
            return
        if isinstance(items, Mapping):
            for key, value in items.items():
                if isinstance(value, (list, tuple)):
                    self._data[key] = [str(v) for v in value]
                else:
                    self._data[key] = [str(value)]
        else:
            for key, value in items:
                self.add(key, value)

    @classmethod
    def from_query_string(cls, qs: Union[str, bytes]) -> "MultiDict":
        if isinstance(qs, bytes):
            qs = qs.decode("latin-1")
        return cls(parse_qsl(qs, keep_blank_values=True))

    def __getitem__(self, key: str) -> str:
        return self._data[key][0]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"MultiDict({self._data})"

    def get_all(self, key: str) -> List[str]:
        return list(self._data.get(key, []))

    def add(self, key: str, value: str) -> None:
        self._data.setdefault(key, []).append(value)

    def items_list(self) -> List[Tuple[str, str]]:
        return [(k, v) for k, values in self._data.items() for v in values]

    def to_dict(self, multi: bool = False) -> Dict[str, Union[str, List[str]]]:
        if multi:
            return {k: list(v) for k, v in self._data.items()}
        return {k: v[0] for k, v in self._data.items() if v}


# ============================================================================
# Headers
# ============================================================================

@dataclass
class Headers:
    """Case-insensitive header access over ASGI ``(bytes, bytes)`` pairs."""

    raw: List[Tuple[bytes, bytes]] = field(default_factory=list)
    _index: Dict[str, List[str]] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self):
        for name, value in self.raw:
            self._index.setdefault(name.decode("latin-1").lower(), []).append(value.decode("latin-1"))

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        values = self._index.get(name.lower())
        return values[0] if values else default

    def get_all(self, name: str) -> List[str]:
        return list(self._index.get(name.lower(), []))

    def items(self) -> Iterator[Tuple[str, str]]:
        for name, value in self.raw:
            yield name.decode("latin-1"), value.decode("latin-1")

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._index

    def __getitem__(self, name: str) -> str:
        value = self.get(name)
        if value is None:
            raise KeyError(f"Header '{name}' not found")
        return value
