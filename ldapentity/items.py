"""
Directory entries and the value decoders they use.

A :py:class:`DirectoryEntryItem` wraps one search result.  Its positional
entries enumerate the attribute names present on the entry, and each name keys
its own bag of values.  The module also provides the decoders for the binary
identifiers (``objectGUID``, ``objectSid``) and the timestamp formats
(generalized time, Windows FILETIME) that Active Directory hands back.
"""

import datetime
import re
import struct
import uuid
from collections.abc import Mapping
from typing import Any, ClassVar

import pytz
from django.utils.encoding import DjangoUnicodeDecodeError, force_str

from .bags import COUNT_KEY, AttributeBag
from .exceptions import DataInvalid, InvalidArgument, KeyNotFound
from .typing import RawBag

#: The Unix epoch.
UNIX_EPOCH: datetime.datetime = datetime.datetime(1970, 1, 1, tzinfo=pytz.utc)
#: The Active Directory epoch (January 1, 1601 UTC).
AD_EPOCH: datetime.datetime = datetime.datetime(1601, 1, 1, tzinfo=pytz.utc)
#: FILETIME value Active Directory uses for "never".
FILETIME_NEVER: int = 0x7FFFFFFFFFFFFFFF

GENERALIZED_TIME_RE = re.compile(
    r"^(?P<year>\d{4})(?P<month>\d{2})(?P<day>\d{2})"
    r"(?P<hour>\d{2})(?P<minute>\d{2})(?P<second>\d{2})"
    r"(?:[.,](?P<fraction>\d+))?"
    r"(?P<tz>[Zz]|[+-]\d{4})$"
)
SID_RE = re.compile(r"^S-(\d+)-(\d+)((?:-\d+)*)$", re.IGNORECASE)


# -----------------------
# Binary identifiers
# -----------------------


def decode_guid(data: bytes) -> str:
    """
    Convert a binary ``objectGUID`` to its canonical text form.

    The Microsoft wire layout is one little-endian 4-byte block, two
    little-endian 2-byte blocks, and then eight bytes in network order.

    Example:
        >>> decode_guid(bytes(range(1, 17)))
        '04030201-0605-0807-090A-0B0C0D0E0F10'

    Args:
        data: exactly 16 bytes

    Raises:
        DataInvalid: ``data`` is not 16 bytes long

    Returns:
        The GUID as ``XXXXXXXX-XXXX-XXXX-XXXX-XXXXXXXXXXXX``.

    """
    if not isinstance(data, (bytes, bytearray)) or len(data) != 16:  # noqa: PLR2004
        msg = f"Invalid GUID encountered: {data!r}"
        raise DataInvalid(msg)
    return str(uuid.UUID(bytes_le=bytes(data))).upper()


def decode_sid(data: bytes) -> str:
    """
    Convert a binary security identifier to ``S-R-A-S1-S2-...`` form.

    Layout: revision (1 byte), sub-authority count (1 byte), identifier
    authority (6 bytes, big-endian), then ``count`` little-endian 4-byte
    sub-authorities.

    Raises:
        DataInvalid: ``data`` is truncated or its length disagrees with the
            sub-authority count

    """
    if not isinstance(data, (bytes, bytearray)) or len(data) < 8:  # noqa: PLR2004
        msg = f"Invalid SID encountered: {data!r}"
        raise DataInvalid(msg)
    revision = data[0]
    count = data[1]
    if len(data) != 8 + 4 * count:
        msg = (
            f"Invalid SID encountered: {count} sub-authorities need "
            f"{8 + 4 * count} bytes, got {len(data)}"
        )
        raise DataInvalid(msg)
    authority = int.from_bytes(data[2:8], "big")
    sub_authorities = struct.unpack(f"<{count}I", bytes(data[8:]))
    return "-".join(["S", str(revision), str(authority), *map(str, sub_authorities)])


def encode_sid(text: str) -> bytes:
    """
    Convert ``S-R-A-S1-S2-...`` text to a binary security identifier.

    Raises:
        InvalidArgument: ``text`` is not a well-formed SID

    """
    match = SID_RE.match(text.strip())
    if not match:
        msg = f"Invalid SID string: {text}"
        raise InvalidArgument(msg)
    revision = int(match.group(1))
    authority = int(match.group(2))
    sub_authorities = [int(s) for s in match.group(3).split("-") if s]
    if revision > 0xFF or authority >= 1 << 48 or len(sub_authorities) > 0xFF:  # noqa: PLR2004
        msg = f"Invalid SID string: {text}"
        raise InvalidArgument(msg)
    try:
        tail = struct.pack(f"<{len(sub_authorities)}I", *sub_authorities)
    except struct.error as e:
        msg = f"Invalid SID string: {text}"
        raise InvalidArgument(msg) from e
    return bytes([revision, len(sub_authorities)]) + authority.to_bytes(6, "big") + tail


def next_sid_candidate(sid: bytes) -> str:
    """
    Compute the SID that follows ``sid`` and escape it for a filter.

    The trailing 4 bytes of a SID are the little-endian relative identifier
    (RID).  We add one to it, reassemble the SID, hex encode it and prefix each
    byte pair with a backslash, which is the form a binary attribute match in
    an LDAP filter wants::

        (objectSid=\\01\\05\\00\\00...)

    Note:
        This is a heuristic for finding a *probably* unused identifier.  It does
        not reserve anything, and two callers can compute the same candidate.

    Example:
        S-1-5-21-3623811015-3361044348-30300820-1013 gives the escaped form of
        S-1-5-21-3623811015-3361044348-30300820-1014.

    Args:
        sid: a binary SID

    Raises:
        DataInvalid: ``sid`` is malformed, has no relative identifier, or its
            relative identifier would overflow

    Returns:
        The escaped hex of the next SID.

    """
    # Validates the layout
    decode_sid(sid)
    if len(sid) < 12:  # noqa: PLR2004
        msg = "SID has no relative identifier"
        raise DataInvalid(msg)
    (rid,) = struct.unpack("<I", bytes(sid[-4:]))
    if rid >= 0xFFFFFFFF:  # noqa: PLR2004
        msg = f"Relative identifier {rid} can't be incremented"
        raise DataInvalid(msg)
    candidate = bytes(sid[:-4]) + struct.pack("<I", rid + 1)
    return "".join(f"\\{byte:02x}" for byte in candidate)


# -----------------------
# Timestamps
# -----------------------


def parse_generalized_time(
    value: str,
) -> tuple[datetime.datetime, datetime.tzinfo]:
    """
    Parse an LDAP generalized time string.

    Accepts ``YYYYMMDDHHMMSS[.fraction](Z|±HHMM)``, e.g. ``20190611024233.0Z``
    or ``20190611024233.0+0800``.

    Args:
        value: the generalized time string

    Raises:
        InvalidArgument: ``value`` doesn't match the format or names an
            impossible date

    Returns:
        A timezone-aware datetime and its timezone.

    """
    match = GENERALIZED_TIME_RE.match(force_str(value).strip())
    if not match:
        msg = f"Invalid timestamp encountered: {value}"
        raise InvalidArgument(msg)
    parts = match.groupdict()
    zone = parts["tz"]
    if zone in ("Z", "z"):
        tz: datetime.tzinfo = pytz.utc
    else:
        minutes = int(zone[1:3]) * 60 + int(zone[3:5])
        tz = pytz.FixedOffset(-minutes if zone[0] == "-" else minutes)
    microsecond = 0
    if parts["fraction"]:
        microsecond = int(parts["fraction"][:6].ljust(6, "0"))
    try:
        naive = datetime.datetime(
            int(parts["year"]),
            int(parts["month"]),
            int(parts["day"]),
            int(parts["hour"]),
            int(parts["minute"]),
            int(parts["second"]),
            microsecond,
        )
    except ValueError as e:
        msg = f"Invalid timestamp encountered: {value}"
        raise InvalidArgument(msg) from e
    return tz.localize(naive), tz  # type: ignore[attr-defined]


def to_unix_timestamp(value: str) -> int:
    """
    Convert an LDAP generalized time string to seconds since the Unix epoch.

    Example:
        >>> to_unix_timestamp("20190611024233.0Z")
        1560220953

    """
    dt, _ = parse_generalized_time(value)
    return int((dt - UNIX_EPOCH).total_seconds())


def parse_filetime(value: Any) -> datetime.datetime | None:
    """
    Convert an Active Directory FILETIME to a UTC datetime.

    FILETIME counts 100-nanosecond intervals since January 1, 1601 UTC.  Active
    Directory uses both ``0`` and ``0x7FFFFFFFFFFFFFFF`` to mean "never".

    Raises:
        InvalidArgument: ``value`` isn't an integer

    Returns:
        The datetime, or ``None`` for "never".

    """
    try:
        intervals = int(force_str(value))
    except (TypeError, ValueError) as e:
        msg = f"Invalid FILETIME encountered: {value!r}"
        raise InvalidArgument(msg) from e
    if intervals <= 0 or intervals >= FILETIME_NEVER:
        return None
    return AD_EPOCH + datetime.timedelta(microseconds=intervals // 10)


# -----------------------
# Entries
# -----------------------


class DirectoryEntryItem(AttributeBag):
    """
    One directory entry.

    Positions ``0..count-1`` hold the attribute *names* present on the entry.
    Each name keys a nested bag holding that attribute's *values*.  The entry's
    DN may also be present under the ``dn`` pseudo-field.

    Attribute lookups try the exact name first and fall back to a
    case-insensitive match, since LDAP attribute names are case-insensitive.

    Text values are decoded from UTF-8 on read.  ``objectGUID`` and
    ``objectSid`` are decoded to their canonical text forms; other attributes
    listed in :py:attr:`BINARY_ATTRIBUTES` are returned as ``bytes``.
    """

    OBJECT_CLASS = "objectClass"
    COMMON_NAME = "cn"
    SURNAME = "sn"
    GIVEN_NAME = "givenName"
    ORGANIZATIONAL_UNIT = "ou"
    DISTINGUISHED_NAME = "distinguishedName"
    INSTANCE_TYPE = "instanceType"
    WHEN_CREATED = "whenCreated"
    WHEN_CHANGED = "whenChanged"
    DISPLAY_NAME = "displayName"
    USN_CREATED = "uSNCreated"
    USN_CHANGED = "uSNChanged"
    NAME = "name"
    COMPANY = "company"
    DEPARTMENT = "department"
    TITLE = "title"
    DESCRIPTION = "description"
    MAIL = "mail"
    MEMBER = "member"
    MEMBER_OF = "memberOf"
    USER_PASSWORD = "userPassword"  # noqa: S105
    UNICODE_PASSWORD = "unicodePwd"  # noqa: S105
    OBJECT_GUID = "objectGUID"
    OBJECT_SID = "objectSid"
    USER_ACCOUNT_CONTROL = "userAccountControl"
    BAD_PASSWORD_COUNT = "badPwdCount"
    BAD_PASSWORD_TIME = "badPasswordTime"
    LAST_LOGOFF = "lastLogoff"
    LAST_LOGON = "lastLogon"
    LAST_LOGON_TIMESTAMP = "lastLogonTimestamp"
    PWD_LAST_SET = "pwdLastSet"  # noqa: S105
    ACCOUNT_EXPIRES = "accountExpires"
    PRIMARY_GROUP_ID = "primaryGroupID"
    LOGON_COUNT = "logonCount"
    SAM_ACCOUNT_NAME = "sAMAccountName"
    SAM_ACCOUNT_TYPE = "sAMAccountType"
    USER_PRINCIPAL_NAME = "userPrincipalName"
    OBJECT_CATEGORY = "objectCategory"
    COUNTRY = "c"
    PROVINCE = "st"
    CITY = "l"

    #: The pseudo-field some result shapes use to carry the entry's DN.
    DN_KEY: ClassVar[str] = "dn"

    #: Attributes whose values are returned as ``bytes`` rather than text.
    BINARY_ATTRIBUTES: ClassVar[frozenset[str]] = frozenset(
        name.lower()
        for name in (
            "jpegPhoto",
            "thumbnailPhoto",
            "userCertificate",
            "cACertificate",
            "msExchMailboxGuid",
            "mS-DS-ConsistencyGuid",
            "logonHours",
            "objectSid;binary",
            "objectGUID;binary",
            "userParameters",
            "unicodePwd",
            "sIDHistory",
        )
    )

    @classmethod
    def from_ldap_data(cls, dn: str, attrs: Mapping[str, list[Any]]) -> "DirectoryEntryItem":
        """
        Build an item from one python-ldap search result.

        python-ldap gives us ``(dn, {attribute: [value, ...]})``; we lay that
        out as the positional/named bag this class wraps.  Attribute order is
        kept.

        Args:
            dn: the DN of the entry
            attrs: the attribute dict for the entry

        Returns:
            A new :py:class:`DirectoryEntryItem`.

        """
        raw: RawBag = {cls.DN_KEY: dn, COUNT_KEY: len(attrs)}
        for index, (name, values) in enumerate(attrs.items()):
            raw[index] = name
            bag: RawBag = {COUNT_KEY: len(values)}
            for position, value in enumerate(values):
                bag[position] = value
            raw[name] = bag
        return cls(raw)

    def _resolve_name(self, attr: str) -> str:
        if attr not in (COUNT_KEY, self.DN_KEY) and self.has(attr):
            return attr
        lowered = attr.lower()
        for name in self.attribute_names():
            if name.lower() == lowered:
                return name
        msg = f"Attribute '{attr}' is not present on {self._label()}"
        raise KeyNotFound(msg)

    def _label(self) -> str:
        dn = self.data.get(self.DN_KEY)
        return f"entry '{dn}'" if dn else "entry"

    def _values_bag(self, attr: str) -> AttributeBag:
        return self.nested(self._resolve_name(attr))

    def _decode(self, attr: str, value: Any) -> Any:
        name = attr.lower()
        if name == self.OBJECT_GUID.lower():
            return decode_guid(value)
        if name == self.OBJECT_SID.lower():
            return decode_sid(value)
        if name in self.BINARY_ATTRIBUTES or not isinstance(value, (bytes, bytearray)):
            return value
        try:
            return force_str(value)
        except DjangoUnicodeDecodeError as e:
            msg = f"Attribute '{attr}' on {self._label()} is not valid UTF-8"
            raise DataInvalid(msg) from e

    def attribute_names(self) -> list[str]:
        """
        Return the names of the attributes present on this entry, in order.
        """
        return [force_str(self.raw(index)) for index in range(self.count())]

    def has_attribute(self, attr: str) -> bool:
        """
        Return ``True`` if ``attr`` is present on this entry.
        """
        try:
            self._resolve_name(attr)
        except KeyNotFound:
            return False
        return True

    def value_count(self, attr: str) -> int:
        """
        Return how many values ``attr`` has.

        Raises:
            KeyNotFound: ``attr`` is not present
            DataInvalid: the value bag for ``attr`` is malformed

        """
        return self._values_bag(attr).count()

    def raw_value(self, attr: str, index: int = 0) -> Any:
        """
        Return value ``index`` of ``attr`` exactly as the server sent it.
        """
        return self._values_bag(attr).raw(index)

    def raw_values(self, attr: str) -> list[Any]:
        """
        Return every value of ``attr`` exactly as the server sent it.
        """
        return list(self._values_bag(attr))

    def value(self, attr: str, index: int = 0) -> Any:
        """
        Return value ``index`` of ``attr``, decoded.

        For single-valued attributes use ``index=0``.

        Args:
            attr: the attribute name

        Keyword Args:
            index: which value to return

        Raises:
            KeyNotFound: ``attr`` is not present
            IndexOutOfBounds: ``index`` is outside ``[0, value_count(attr))``
            DataInvalid: the value could not be decoded

        """
        return self._decode(attr, self.raw_value(attr, index))

    def values(self, attr: str) -> list[Any]:
        """
        Return every value of ``attr``, decoded.

        Raises:
            KeyNotFound: ``attr`` is not present
            DataInvalid: a value could not be decoded

        """
        return [self._decode(attr, value) for value in self.raw_values(attr)]

    def dn(self) -> str:
        """
        Return the DN of this entry.

        The ``dn`` pseudo-field wins; otherwise we use the value of the
        ``distinguishedName`` attribute.

        Raises:
            KeyNotFound: neither is present

        """
        dn = self.data.get(self.DN_KEY)
        if dn is not None:
            return force_str(dn)
        return self.value(self.DISTINGUISHED_NAME)

    def timestamp(self, attr: str, index: int = 0) -> datetime.datetime:
        """
        Return a generalized time attribute (``whenCreated``, ``whenChanged``)
        as a timezone-aware datetime.

        Raises:
            KeyNotFound: ``attr`` is not present
            InvalidArgument: the value is not a generalized time

        """
        dt, _ = parse_generalized_time(self.value(attr, index))
        return dt

    def filetime(self, attr: str, index: int = 0) -> datetime.datetime | None:
        """
        Return a FILETIME attribute (``lastLogon``, ``pwdLastSet``,
        ``accountExpires``) as a UTC datetime, or ``None`` for "never".
        """
        return parse_filetime(self.value(attr, index))

    def next_sid_candidate(self) -> str:
        """
        Return :py:func:`next_sid_candidate` for this entry's ``objectSid``.

        Raises:
            KeyNotFound: the entry has no ``objectSid``
            DataInvalid: the ``objectSid`` is malformed

        """
        return next_sid_candidate(self.raw_value(self.OBJECT_SID))

    def __str__(self) -> str:
        try:
            dn = self.dn()
        except DataInvalid:
            dn = ""
        return f"{{{self.__class__.__name__}|{dn}}}"
