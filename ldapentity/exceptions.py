"""
Exceptions raised by ldapentity.

Errors that originate from a directory round trip derive from
:py:class:`DirectoryError` and carry the server's result code and message.
Errors that originate from decoding local data derive from
:py:class:`DataInvalid` or :py:class:`InvalidArgument`, both of which are
:py:class:`ValueError` subclasses.
"""

from typing import Any


def error_details(exc: BaseException) -> tuple[int, str]:
    """
    Extract the result code and message from a python-ldap exception.

    python-ldap raises exceptions whose first argument is a dict with
    ``result``, ``desc`` and (sometimes) ``info`` keys.

    Args:
        exc: the exception raised by python-ldap

    Returns:
        A ``(code, message)`` tuple.  ``code`` is ``-1`` when the exception
        carries no result code.

    """
    info: Any = exc.args[0] if exc.args else None
    if isinstance(info, dict):
        code = info.get("result", info.get("errno", -1))
        message = info.get("desc", "")
        if info.get("info"):
            message = f"{message} ({info['info']})" if message else info["info"]
        return int(code), str(message)
    return -1, str(exc)


class DirectoryError(Exception):
    """
    Base class for errors reported by a directory operation.

    Args:
        message: what we were trying to do

    Keyword Args:
        code: the LDAP result code reported by the client
        server_message: the diagnostic message reported by the client

    """

    def __init__(
        self, message: str, code: int | None = None, server_message: str | None = None
    ) -> None:
        self.message = message
        self.code = code
        self.server_message = server_message
        text = message
        if code is not None:
            text = f"{message} | {code}: {server_message or ''}"
        super().__init__(text)

    @classmethod
    def from_ldap_error(cls, message: str, exc: BaseException) -> "DirectoryError":
        """
        Build one of our exceptions from a python-ldap exception.
        """
        code, server_message = error_details(exc)
        return cls(message, code=code, server_message=server_message)


class ConnectFailed(DirectoryError):
    """Raised when we can't reach the directory server."""


class BindAuthFailed(DirectoryError):
    """Raised when the server refuses our bind credentials."""


class ReadFailed(DirectoryError):
    """
    Raised when a search, read or list failed outright, or when an operation
    that requires a result got none.
    """


class ModifyFailed(DirectoryError):
    """Raised when an add, delete, modify or rename failed."""


class DataInvalid(ValueError):
    """
    Raised when an attribute bag or binary identifier is malformed.
    """


class IndexOutOfBounds(DataInvalid, IndexError):
    """Raised when a positional index is outside ``[0, count)``."""


class KeyNotFound(DataInvalid, KeyError):
    """Raised when a named attribute is absent."""

    def __str__(self) -> str:
        # KeyError.__str__ repr()s its argument
        return str(self.args[0]) if self.args else ""


class InvalidArgument(ValueError):
    """
    Raised for malformed caller input: timestamps, DNs, escape sequences and
    filter strings.
    """
