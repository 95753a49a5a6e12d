"""
Distinguished names restricted to the ``cn``/``ou``/``dc`` attribute types.

A :py:class:`DistinguishedName` keeps three ordered lists of *escaped* values
and always serializes them cn first, then ou, then dc::

    >>> dn = DistinguishedName(ou=["Eng"], dc=["example", "com"])
    >>> str(dn.make_child("ou", "Sales"))
    'ou=Sales,ou=Eng,dc=example,dc=com'
"""

from collections.abc import Iterable

from .exceptions import InvalidArgument

#: The attribute types we understand, in serialization order.
KINDS: tuple[str, ...] = ("cn", "ou", "dc")

#: Characters that must always be escaped inside a DN attribute value.
SPECIAL_CHARACTERS: frozenset[str] = frozenset(',+"\\<>;=\x00')
#: Characters RFC 4514 allows after a backslash as a literal pair.
PAIR_CHARACTERS: frozenset[str] = SPECIAL_CHARACTERS | {" ", "#"}
HEX_DIGITS: frozenset[str] = frozenset("0123456789abcdefABCDEF")


def _hex(character: str) -> str:
    return "".join(f"\\{byte:02x}" for byte in character.encode("utf-8"))


def escape_component(raw: str) -> str:
    """
    Escape an attribute value for use inside a DN.

    Each of ``, + " \\ < > ; =`` and NUL becomes ``\\XX`` (two lower-case hex
    digits), as do leading and trailing whitespace and a leading ``#``.
    Multi-byte characters are left alone.

    Example:
        >>> escape_component("Doe, John")
        'Doe\\\\2c John'

    Args:
        raw: the unescaped value

    Returns:
        The escaped value.

    """
    escaped = []
    last = len(raw) - 1
    for position, character in enumerate(raw):
        if (
            character in SPECIAL_CHARACTERS
            or (position == 0 and (character == "#" or character.isspace()))
            or (position == last and character.isspace())
        ):
            escaped.append(_hex(character))
        else:
            escaped.append(character)
    return "".join(escaped)


def unescape_component(escaped: str) -> str:
    """
    Reverse :py:func:`escape_component`.

    ``\\XX`` hex pairs are decoded as bytes and the result is read as UTF-8,
    so a multi-byte character may be escaped byte by byte.  RFC 4514 literal
    pairs such as ``\\,`` are accepted too.

    Raises:
        InvalidArgument: a backslash is followed by anything else, a backslash
            dangles at the end, or the escaped bytes aren't valid UTF-8

    """
    buffer = bytearray()
    position = 0
    length = len(escaped)
    while position < length:
        character = escaped[position]
        if character != "\\":
            buffer.extend(character.encode("utf-8"))
            position += 1
            continue
        pair = escaped[position + 1 : position + 3]
        if len(pair) == 2 and pair[0] in HEX_DIGITS and pair[1] in HEX_DIGITS:  # noqa: PLR2004
            buffer.append(int(pair, 16))
            position += 3
        elif pair and pair[0] in PAIR_CHARACTERS:
            buffer.extend(pair[0].encode("utf-8"))
            position += 2
        elif not pair:
            msg = f'Dangling escape at the end of "{escaped}"'
            raise InvalidArgument(msg)
        else:
            msg = f'Invalid escape sequence "\\{pair[0]}" in "{escaped}"'
            raise InvalidArgument(msg)
    try:
        return buffer.decode("utf-8")
    except UnicodeDecodeError as e:
        msg = f'Escaped value "{escaped}" is not valid UTF-8'
        raise InvalidArgument(msg) from e


def _strip_spaces(text: str) -> str:
    text = text.lstrip(" ")
    while text.endswith(" "):
        backslashes = len(text[:-1]) - len(text[:-1].rstrip("\\"))
        if backslashes % 2:
            break
        text = text[:-1]
    return text


def split_components(dn: str) -> list[str]:
    """
    Split ``dn`` on the commas that separate its components.

    Backslashes escape the character after them, so ``cn=Doe\\,John`` is a
    single component.  Components are stripped of surrounding spaces, but not
    of escaped ones.

    Raises:
        InvalidArgument: ``dn`` ends in a dangling backslash

    """
    components: list[str] = []
    current: list[str] = []
    escaping = False
    for character in dn:
        if escaping:
            current.append(character)
            escaping = False
        elif character == "\\":
            current.append(character)
            escaping = True
        elif character == ",":
            components.append(_strip_spaces("".join(current)))
            current = []
        else:
            current.append(character)
    if escaping:
        msg = f'Dangling escape at the end of "{dn}"'
        raise InvalidArgument(msg)
    components.append(_strip_spaces("".join(current)))
    return components


class DistinguishedName:
    """
    A DN made of ``cn``, ``ou`` and ``dc`` components.

    Values are stored escaped.  Unless ``already_escaped`` is true, the values
    passed in are escaped with :py:func:`escape_component` first.

    Keyword Args:
        cn: common name values, most specific first
        ou: organizational unit values, most specific first
        dc: domain component values, most specific first
        already_escaped: the values are already escaped

    """

    def __init__(
        self,
        cn: Iterable[str] = (),
        ou: Iterable[str] = (),
        dc: Iterable[str] = (),
        already_escaped: bool = False,
    ) -> None:
        def prepare(values: Iterable[str]) -> list[str]:
            if isinstance(values, str):
                values = [values]
            if already_escaped:
                return list(values)
            return [escape_component(value) for value in values]

        self._components: dict[str, list[str]] = {
            "cn": prepare(cn),
            "ou": prepare(ou),
            "dc": prepare(dc),
        }

    @classmethod
    def parse(cls, dn: str) -> "DistinguishedName":
        """
        Parse a DN string.

        Each component is split on its first ``=``; the type is lower-cased and
        the value, kept escaped, goes into the list for that type.  Component
        order within a type is preserved, but the relative order of different
        types is not: everything is re-serialized cn, ou, dc.

        Example:
            >>> DistinguishedName.parse("CN=Alice , OU=Eng,DC=example,DC=com").serialize()
            'cn=Alice,ou=Eng,dc=example,dc=com'

        Args:
            dn: the DN string.  The empty string gives an empty DN.

        Raises:
            InvalidArgument: a component has no ``=``, or its type isn't one of
                ``cn``, ``ou`` or ``dc``

        """
        entity = cls()
        if not dn or not dn.strip():
            return entity
        for component in split_components(dn):
            kind, sep, value = component.partition("=")
            if not sep:
                msg = f'DN component "{component}" has no "=" in "{dn}"'
                raise InvalidArgument(msg)
            kind = kind.strip().lower()
            if kind not in KINDS:
                msg = f'Unsupported attribute type "{kind}" in "{dn}"'
                raise InvalidArgument(msg)
            entity._components[kind].append(_strip_spaces(value))
        return entity

    def serialize(self) -> str:
        """
        Return the DN string: all ``cn``, then all ``ou``, then all ``dc``
        components, comma joined.
        """
        return ",".join(
            f"{kind}={value}" for kind in KINDS for value in self._components[kind]
        )

    def _check_kind(self, kind: str) -> str:
        kind = kind.lower()
        if kind not in KINDS:
            msg = f'Unsupported attribute type "{kind}"; use one of {", ".join(KINDS)}'
            raise InvalidArgument(msg)
        return kind

    def copy(self) -> "DistinguishedName":
        return DistinguishedName(
            cn=self._components["cn"],
            ou=self._components["ou"],
            dc=self._components["dc"],
            already_escaped=True,
        )

    def make_child(
        self, kind: str, value: str, escaped: bool = False
    ) -> "DistinguishedName":
        """
        Return a new DN with ``value`` prepended to the ``kind`` components.

        ``self`` is not modified.

        Args:
            kind: ``cn``, ``ou`` or ``dc``
            value: the new value

        Keyword Args:
            escaped: ``value`` is already escaped

        Raises:
            InvalidArgument: ``kind`` is not a supported type

        """
        kind = self._check_kind(kind)
        child = self.copy()
        child._components[kind].insert(0, value if escaped else escape_component(value))
        return child

    def split_into_rdn_and_parent(self) -> tuple[str, str]:
        """
        Split off the most specific component.

        Components are taken in priority order cn, then ou, then dc.

        Example:
            >>> DistinguishedName(cn=["Alice"], ou=["Eng"]).split_into_rdn_and_parent()
            ('cn=Alice', 'ou=Eng')

        Raises:
            InvalidArgument: the DN is empty

        Returns:
            ``(rdn, parent)`` where ``rdn`` is ``type=value`` and ``parent`` is
            the serialized remainder.

        """
        remainder = self.copy()
        for kind in KINDS:
            values = remainder._components[kind]
            if values:
                value = values.pop(0)
                return f"{kind}={value}", remainder.serialize()
        msg = "Can't split an empty distinguished name"
        raise InvalidArgument(msg)

    @property
    def common_names(self) -> list[str]:
        return list(self._components["cn"])

    @property
    def organizational_units(self) -> list[str]:
        return list(self._components["ou"])

    @property
    def domain_components(self) -> list[str]:
        return list(self._components["dc"])

    def components(self, kind: str, unescaped: bool = False) -> list[str]:
        """
        Return the values for ``kind``, escaped unless ``unescaped`` is true.
        """
        values = self._components[self._check_kind(kind)]
        if unescaped:
            return [unescape_component(value) for value in values]
        return list(values)

    def first(self, kind: str, unescaped: bool = True) -> str | None:
        """
        Return the first (most specific) value for ``kind``, or ``None``.
        """
        values = self.components(kind, unescaped=unescaped)
        return values[0] if values else None

    def is_empty(self) -> bool:
        return not any(self._components.values())

    def _key(self) -> tuple[tuple[str, ...], ...]:
        # Hex escapes are case-insensitive
        return tuple(
            tuple(value.lower() for value in self._components[kind]) for kind in KINDS
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DistinguishedName):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __str__(self) -> str:
        return self.serialize()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}: {self.serialize()}>"
