"""
Validated access to nested search-result structures.

A bag is a mapping that holds positional entries ``0..count-1``, a ``count``
entry giving their cardinality, and optionally name-keyed entries that are
themselves bags::

    {
        "count": 2,
        0: "cn",
        1: "sn",
        "cn": {"count": 1, 0: b"Alice"},
        "sn": {"count": 1, 0: b"Jones"},
    }
"""

from collections.abc import Iterator, Mapping
from typing import Any

from .exceptions import DataInvalid, IndexOutOfBounds, KeyNotFound

#: The key holding the cardinality of the positional entries.
COUNT_KEY = "count"


class AttributeBag:
    """
    Wrap one nested search-result mapping.

    Positional access is bounded by :py:meth:`count`; reaching outside
    ``[0, count)`` raises :py:class:`IndexOutOfBounds`, never returns ``None``.

    Args:
        data: the raw mapping

    Raises:
        DataInvalid: ``data`` is not a mapping

    """

    def __init__(self, data: Mapping[Any, Any]) -> None:
        if not isinstance(data, Mapping):
            msg = f"Expected a mapping, got {type(data).__name__}"
            raise DataInvalid(msg)
        self.data = data

    def count(self) -> int:
        """
        Return the number of positional entries.

        Raises:
            DataInvalid: the ``count`` entry is absent or not an integer

        Returns:
            The value of the ``count`` entry.

        """
        try:
            value = self.data[COUNT_KEY]
        except KeyError as e:
            msg = "Attribute bag has no 'count' entry"
            raise DataInvalid(msg) from e
        if isinstance(value, bool) or not isinstance(value, int):
            msg = f"Attribute bag 'count' is not an integer: {value!r}"
            raise DataInvalid(msg)
        return value

    def raw(self, index: int) -> Any:
        """
        Return the positional entry at ``index``.

        Args:
            index: the position to read

        Raises:
            IndexOutOfBounds: ``index`` is outside ``[0, count)``, or the bag
                claims an entry it doesn't actually hold

        Returns:
            The raw value at ``index``.

        """
        count = self.count()
        if isinstance(index, bool) or not isinstance(index, int):
            msg = f"Index must be an integer, got {index!r}"
            raise IndexOutOfBounds(msg)
        if index < 0 or index >= count:
            msg = f"Index {index} is out of bounds [0, {count})"
            raise IndexOutOfBounds(msg)
        try:
            return self.data[index]
        except KeyError as e:
            msg = f"Attribute bag claims {count} entries but has no entry {index}"
            raise IndexOutOfBounds(msg) from e

    def attribute(self, name: str) -> Any:
        """
        Return the name-keyed entry ``name``.

        Raises:
            KeyNotFound: ``name`` is absent

        """
        try:
            return self.data[name]
        except KeyError as e:
            msg = f"No entry named '{name}'"
            raise KeyNotFound(msg) from e

    def has(self, name: str) -> bool:
        return name in self.data

    def nested(self, key: int | str) -> "AttributeBag":
        """
        Return the entry at ``key`` wrapped as an :py:class:`AttributeBag`.

        Args:
            key: a position (``int``) or a name (``str``)

        Raises:
            IndexOutOfBounds: ``key`` is a position outside ``[0, count)``
            KeyNotFound: ``key`` is a name that is absent
            DataInvalid: the located value is not itself a nested structure

        """
        value = self.raw(key) if isinstance(key, int) else self.attribute(key)
        if not isinstance(value, Mapping):
            msg = f"Entry {key!r} is not a nested structure"
            raise DataInvalid(msg)
        return AttributeBag(value)

    def __len__(self) -> int:
        return self.count()

    def __iter__(self) -> Iterator[Any]:
        for index in range(self.count()):
            yield self.raw(index)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}: {self.data!r}>"
