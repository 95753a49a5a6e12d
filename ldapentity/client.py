"""
The directory client: the one place ldapentity talks to python-ldap.

:py:class:`DirectoryClient` owns a single python-ldap connection and turns its
results into :py:class:`~ldapentity.items.DirectoryEntryItem` objects.  Every
failure python-ldap reports is converted to one of the exceptions in
:py:mod:`ldapentity.exceptions`, and the result of the last operation is kept
for :py:meth:`DirectoryClient.last_error`.

Configure it directly::

    client = DirectoryClient(
        "ldaps://dc.example.com",
        user="cn=admin,dc=example,dc=com",
        password="secret",
        options={"tls_verify": "always", "use_starttls": False},
    )

or from Django settings (see :py:meth:`DirectoryClient.from_settings`)::

    LDAP_SERVERS = {
        "default": {
            "basedn": "dc=example,dc=com",
            "read": {
                "url": "ldap://dc.example.com",
                "user": "cn=reader,dc=example,dc=com",
                "password": "secret",
                "use_starttls": True,
                "tls_verify": "always",
                "timeout": 15.0,
            },
            "write": {...},
        }
    }
"""

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any, cast

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from ldap import modlist
from ldap.controls import SimplePagedResultsControl

from ldapentity import ldap

from .exceptions import (
    BindAuthFailed,
    ConnectFailed,
    InvalidArgument,
    ModifyFailed,
    ReadFailed,
    error_details,
)
from .filters import ANY_OBJECT
from .items import DirectoryEntryItem
from .typing import AddModlist, LDAPData, ModifyModList

#: Names accepted for the ``scope`` argument of :py:meth:`DirectoryClient.search`.
SCOPES: dict[str, int] = {
    "base": ldap.SCOPE_BASE,  # type: ignore[attr-defined]
    "one-level": ldap.SCOPE_ONELEVEL,  # type: ignore[attr-defined]
    "onelevel": ldap.SCOPE_ONELEVEL,  # type: ignore[attr-defined]
    "one": ldap.SCOPE_ONELEVEL,  # type: ignore[attr-defined]
    "subtree": ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
    "sub": ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
}

#: Names accepted for the ``mode`` argument of :py:meth:`DirectoryClient.modify`.
MODIFY_MODES: dict[str, int] = {
    "add": ldap.MOD_ADD,  # type: ignore[attr-defined]
    "delete": ldap.MOD_DELETE,  # type: ignore[attr-defined]
    "replace": ldap.MOD_REPLACE,  # type: ignore[attr-defined]
}

SUCCESS: tuple[int, str] = (0, "Success")


def encode_values(value: Any) -> list[bytes]:
    """
    Normalize an attribute value to the ``list[bytes]`` python-ldap wants.

    ``value`` may be a single ``str``, ``bytes`` or ``int``, or a list of
    them.  ``None`` gives an empty list.
    """
    if value is None:
        return []
    if isinstance(value, (str, bytes, bytearray, int)):
        value = [value]
    encoded: list[bytes] = []
    for v in value:
        if isinstance(v, (bytes, bytearray)):
            encoded.append(bytes(v))
        else:
            encoded.append(str(v).encode("utf-8"))
    return encoded


def encode_attributes(attributes: Mapping[str, Any]) -> dict[str, list[bytes]]:
    return {name: encode_values(value) for name, value in attributes.items()}


class DirectoryClient:
    """
    A synchronous connection to one directory server.

    The connection is opened lazily by the first operation that needs it (or
    explicitly with :py:meth:`connect` and :py:meth:`bind`).  Use the client as
    a context manager to have it unbind for you::

        with DirectoryClient.from_settings("default", "write") as client:
            client.delete("cn=Alice,ou=Eng,dc=example,dc=com")

    Args:
        url: the LDAP URL of the server, e.g. ``ldaps://dc.example.com``

    Keyword Args:
        user: the DN to bind as
        password: the password for ``user``
        options: connection options; the same keys as a ``read``/``write``
            block in ``settings.LDAP_SERVERS``
        basedn: the default search base for callers that want one
        logger: where to log; defaults to the ``ldapentity`` logger

    """

    def __init__(
        self,
        url: str,
        user: str | None = None,
        password: str | None = None,
        options: dict[str, Any] | None = None,
        basedn: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.url = url
        self.user = user
        self.password = password
        self.options: dict[str, Any] = dict(options or {})
        self.basedn = basedn
        self.logger = logger or logging.getLogger("ldapentity")
        self.pagesize: int = int(self.options.get("page_size", 100))
        self._connection: Any = None
        self._bound: bool = False
        self._last_error: tuple[int, str] = SUCCESS

    @classmethod
    def from_settings(
        cls,
        server: str = "default",
        key: str = "read",
        logger: logging.Logger | None = None,
    ) -> "DirectoryClient":
        """
        Build a client from ``settings.LDAP_SERVERS[server][key]``.

        ``settings.LDAP_SERVERS[server]["basedn"]``, if set, becomes the
        client's :py:attr:`basedn`.

        Args:
            server: the name of the server block in ``settings.LDAP_SERVERS``
            key: which connection in that block to use: ``read`` or ``write``

        Keyword Args:
            logger: where to log

        Raises:
            ImproperlyConfigured: the setting, the server block or the
                connection key is missing, or the block has no ``url``

        """
        servers = getattr(settings, "LDAP_SERVERS", None)
        if not servers:
            msg = "settings.LDAP_SERVERS is not defined"
            raise ImproperlyConfigured(msg)
        try:
            server_config = servers[server]
        except KeyError as e:
            msg = f'settings.LDAP_SERVERS has no server named "{server}"'
            raise ImproperlyConfigured(msg) from e
        try:
            config = dict(server_config[key])
        except KeyError as e:
            msg = f'settings.LDAP_SERVERS["{server}"] has no "{key}" connection'
            raise ImproperlyConfigured(msg) from e
        if "url" not in config:
            msg = f'settings.LDAP_SERVERS["{server}"]["{key}"] has no "url"'
            raise ImproperlyConfigured(msg)
        return cls(
            config.pop("url"),
            user=config.pop("user", None),
            password=config.pop("password", None),
            options=config,
            basedn=server_config.get("basedn"),
            logger=logger,
        )

    # -----------------------
    # Bookkeeping
    # -----------------------

    def _succeeded(self) -> None:
        self._last_error = SUCCESS

    def _failed(self, exc: BaseException) -> None:
        self._last_error = error_details(exc)

    def last_error(self) -> tuple[int, str]:
        """
        Return ``(code, message)`` for the last operation.

        ``(0, "Success")`` after a successful operation.
        """
        return self._last_error

    # -----------------------
    # Connection management
    # -----------------------

    def connect(self) -> Any:  # noqa: PLR0912, PLR0915
        """
        Create the python-ldap connection object and apply our options.

        If ``use_starttls`` is set (the default), this also negotiates TLS,
        which is the first point at which the server is actually contacted.

        Raises:
            ValueError: If the ``tls_verify`` option is not ``never`` or
                ``always``.
            OSError: If a CA certificate, certificate or key file is
                configured but does not exist or is not a file.
            ConnectFailed: If python-ldap can't set up the connection.

        Returns:
            The connected ``ldap.ldapobject.LDAPObject``.

        """
        config = self.options
        try:
            ldap_object = ldap.initialize(self.url)  # type: ignore[attr-defined]
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            self._failed(e)
            self.logger.warning("ldapentity.client.connect.failed url=%s", self.url)
            msg = f"Could not initialize a connection to {self.url}"
            raise ConnectFailed.from_ldap_error(msg, e) from e
        if config.get("follow_referrals", False):
            ldap_object.set_option(ldap.OPT_REFERRALS, 1)  # type: ignore[attr-defined]
        else:
            ldap_object.set_option(ldap.OPT_REFERRALS, 0)  # type: ignore[attr-defined]
        ldap_object.set_option(ldap.OPT_PROTOCOL_VERSION, ldap.VERSION3)  # type: ignore[attr-defined]
        timeout = config.get("timeout", 15.0)
        ldap_object.set_option(ldap.OPT_NETWORK_TIMEOUT, float(timeout))  # type: ignore[attr-defined]
        sizelimit = config.get("sizelimit", None)
        if sizelimit:
            ldap_object.set_option(ldap.OPT_SIZELIMIT, int(sizelimit))  # type: ignore[attr-defined]
        tls_verify = config.get("tls_verify", "never")
        if tls_verify == "never":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_NEVER)  # type: ignore[attr-defined]
        elif tls_verify == "always":
            ldap_object.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND)  # type: ignore[attr-defined]
        else:
            msg = f"Invalid tls_verify value: {tls_verify}"
            raise ValueError(msg)
        for option_name, ldap_option, label in (
            ("tls_ca_certfile", "OPT_X_TLS_CACERTFILE", "CA Certificate file"),
            ("tls_certfile", "OPT_X_TLS_CERTFILE", "TLS Certificate file"),
            ("tls_keyfile", "OPT_X_TLS_KEYFILE", "TLS Key file"),
        ):
            if filename := config.get(option_name, None):
                path = Path(filename)
                if not path.exists():
                    msg = f"{label} does not exist: {filename}"
                    raise OSError(msg)
                if not path.is_file():
                    msg = f"{label} is not a file: {filename}"
                    raise OSError(msg)
                ldap_object.set_option(getattr(ldap, ldap_option), filename)
        ldap_object.set_option(ldap.OPT_X_TLS_NEWCTX, 0)  # type: ignore[attr-defined]
        if config.get("use_starttls", True):
            try:
                ldap_object.start_tls_s()
            except ldap.LDAPError as e:  # type: ignore[attr-defined]
                self._failed(e)
                self.logger.warning(
                    "ldapentity.client.starttls.failed url=%s code=%s",
                    self.url,
                    self._last_error[0],
                )
                msg = f"Could not negotiate TLS with {self.url}"
                raise ConnectFailed.from_ldap_error(msg, e) from e
        self.logger.debug(
            "ldapentity.client.connect url=%s tls_verify=%s starttls=%s",
            self.url,
            tls_verify,
            config.get("use_starttls", True),
        )
        self._connection = ldap_object
        self._bound = False
        self._succeeded()
        return ldap_object

    def bind(self, principal: str | None = None, credential: str | None = None) -> None:
        """
        Do a simple bind.

        Keyword Args:
            principal: the DN to bind as; defaults to the configured user
            credential: the password; defaults to the configured password

        Raises:
            ConnectFailed: the server is unreachable
            BindAuthFailed: the server rejected the bind

        """
        if self._connection is None:
            self.connect()
        if principal is None:
            principal = self.user
            credential = self.password
        try:
            self._connection.simple_bind_s(principal or "", credential or "")
        except ldap.SERVER_DOWN as e:  # type: ignore[attr-defined]
            self._failed(e)
            self.logger.warning("ldapentity.client.bind.server_down url=%s", self.url)
            msg = f"Could not reach {self.url}"
            raise ConnectFailed.from_ldap_error(msg, e) from e
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            self._failed(e)
            self.logger.warning(
                "ldapentity.client.bind.failed url=%s user=%s code=%s",
                self.url,
                principal,
                self._last_error[0],
            )
            msg = f'Could not bind to {self.url} as "{principal}"'
            raise BindAuthFailed.from_ldap_error(msg, e) from e
        self._bound = True
        self._succeeded()
        self.logger.debug("ldapentity.client.bind url=%s user=%s", self.url, principal)

    @property
    def connection(self) -> Any:
        """
        Return our bound python-ldap connection, connecting first if need be.
        """
        if self._connection is None or not self._bound:
            self.bind()
        return self._connection

    def set_connection(self, obj: Any) -> None:
        """
        Use an already bound python-ldap connection object.
        """
        self._connection = obj
        self._bound = True

    def unbind(self) -> None:
        """
        Unbind and drop our connection.  Does nothing if we have none.
        """
        if self._connection is None:
            return
        try:
            self._connection.unbind_s()
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            self._failed(e)
            self.logger.warning(
                "ldapentity.client.unbind.failed url=%s code=%s",
                self.url,
                self._last_error[0],
            )
        finally:
            self._connection = None
            self._bound = False

    close = unbind

    def __enter__(self) -> "DirectoryClient":
        self.bind()
        return self

    def __exit__(self, *args: object) -> None:
        self.unbind()

    # -----------------------
    # Searching
    # -----------------------

    def _get_pctrls(self, serverctrls):
        """
        Find the paged results controls among the controls the server sent
        back.  They carry the cookie for the next page.
        """
        return [
            c
            for c in serverctrls
            if c.controlType == SimplePagedResultsControl.controlType
        ]

    def _paged_search(
        self,
        basedn: str,
        scope: int,
        filterstr: str,
        attrlist: list[str] | None = None,
        attrsonly: int = 0,
        sizelimit: int = 0,
        timeout: float = -1,
    ) -> list[LDAPData]:
        """
        Run a search page by page with a Simple Paged Results control.

        Args:
            basedn: where to search from
            scope: a python-ldap ``SCOPE_*`` value
            filterstr: the filter

        Keyword Args:
            attrlist: attributes to retrieve; ``None`` means all
            attrsonly: ask for attribute names only
            sizelimit: the maximum number of entries, 0 for no limit
            timeout: the time limit in seconds, -1 for no limit

        Returns:
            ``(dn, attrs)`` tuples for every page.

        """
        # The cookie starts out empty
        paging = SimplePagedResultsControl(True, size=self.pagesize, cookie="")  # noqa: FBT003
        controls = [paging]
        results: list[LDAPData] = []
        while True:
            msgid = self.connection.search_ext(
                basedn,
                scope,
                filterstr,
                attrlist,
                attrsonly,
                serverctrls=controls,
                timeout=timeout,
                sizelimit=sizelimit,
            )
            _, rdata, _, serverctrls = self.connection.result3(msgid)
            for dn, attrs in rdata:
                # Active Directory ends its pages with referrals
                if isinstance(attrs, dict):
                    results.append((dn, attrs))
            paged_controls = self._get_pctrls(serverctrls or [])
            if not paged_controls:
                # Base scope searches don't page
                break
            controls[0].cookie = paged_controls[0].cookie
            if not paged_controls[0].cookie:
                break
        return results

    def _scope(self, scope: str | int) -> int:
        if isinstance(scope, int):
            return scope
        try:
            return SCOPES[scope.lower()]
        except KeyError as e:
            msg = f'Invalid search scope "{scope}"; use one of {", ".join(SCOPES)}'
            raise ValueError(msg) from e

    def search(
        self,
        base: str,
        filterstr: str = ANY_OBJECT,
        attributes: list[str] | None = None,
        scope: str | int = "subtree",
        attrs_only: bool = False,
        sizelimit: int = 0,
        timelimit: float = -1,
    ) -> list[DirectoryEntryItem]:
        """
        Search the directory.

        Referral entries that Active Directory mixes into results are dropped.
        If the ``paged_search`` option is set, the search is done in pages of
        ``page_size`` (default 100) entries.

        Args:
            base: the DN to search from

        Keyword Args:
            filterstr: the LDAP filter
            attributes: which attributes to retrieve; ``None`` means all
            scope: ``base``, ``one-level`` (or ``onelevel``), ``subtree``, or
                a python-ldap ``SCOPE_*`` value
            attrs_only: retrieve attribute names but no values
            sizelimit: the maximum number of entries, 0 for no limit
            timelimit: the time limit in seconds, -1 for no limit

        Raises:
            InvalidArgument: python-ldap rejected ``filterstr`` as malformed
            ValueError: ``scope`` is not a known scope
            ReadFailed: the search failed

        Returns:
            One :py:class:`DirectoryEntryItem` per entry found.  An empty list
            if nothing matched or ``base`` doesn't exist.

        """
        ldap_scope = self._scope(scope)
        try:
            if self.options.get("paged_search", False):
                data = self._paged_search(
                    base,
                    ldap_scope,
                    filterstr,
                    attrlist=attributes,
                    attrsonly=int(attrs_only),
                    sizelimit=sizelimit,
                    timeout=timelimit,
                )
            else:
                data = self.connection.search_ext_s(
                    base,
                    ldap_scope,
                    filterstr,
                    attributes,
                    int(attrs_only),
                    timeout=timelimit,
                    sizelimit=sizelimit,
                )
        except ldap.NO_SUCH_OBJECT:  # type: ignore[attr-defined]
            self._succeeded()
            self.logger.debug("ldapentity.client.search.no_such_object base=%s", base)
            return []
        except ldap.FILTER_ERROR as e:  # type: ignore[attr-defined]
            self._failed(e)
            self.logger.warning(
                "ldapentity.client.search.bad_filter base=%s filter=%s", base, filterstr
            )
            msg = f'Invalid LDAP filter "{filterstr}"'
            raise InvalidArgument(msg) from e
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            self._failed(e)
            self.logger.warning(
                "ldapentity.client.search.failed base=%s filter=%s code=%s",
                base,
                filterstr,
                self._last_error[0],
            )
            msg = f'Search of "{base}" with filter "{filterstr}" failed'
            raise ReadFailed.from_ldap_error(msg, e) from e
        self._succeeded()
        return [
            DirectoryEntryItem.from_ldap_data(dn, attrs)
            for dn, attrs in data
            if isinstance(attrs, dict)
        ]

    def read(
        self,
        dn: str,
        filterstr: str = ANY_OBJECT,
        attributes: list[str] | None = None,
    ) -> list[DirectoryEntryItem]:
        """
        Read the entry at ``dn`` itself (a base scope search).
        """
        return self.search(dn, filterstr, attributes=attributes, scope="base")

    def list(
        self,
        dn: str,
        filterstr: str = ANY_OBJECT,
        attributes: list[str] | None = None,
    ) -> list[DirectoryEntryItem]:
        """
        List the immediate children of ``dn`` (a one-level search).
        """
        return self.search(dn, filterstr, attributes=attributes, scope="one-level")

    # -----------------------
    # Modifying
    # -----------------------

    def _modify_failed(self, event: str, dn: str, message: str, exc: Exception) -> ModifyFailed:
        self._failed(exc)
        self.logger.warning(
            "ldapentity.client.%s.failed dn=%s code=%s", event, dn, self._last_error[0]
        )
        return cast("ModifyFailed", ModifyFailed.from_ldap_error(message, exc))

    def add(self, dn: str, attributes: Mapping[str, Any]) -> None:
        """
        Add a new entry.

        Args:
            dn: the DN of the new entry
            attributes: attribute name to value(s); values may be ``str``,
                ``bytes`` or ``int``, or lists of them

        Raises:
            ModifyFailed: the server refused the add

        """
        _modlist: AddModlist = modlist.addModlist(encode_attributes(attributes))
        try:
            self.connection.add_s(dn, _modlist)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            raise self._modify_failed("add", dn, f'Could not add "{dn}"', e) from e
        self._succeeded()
        self.logger.info("ldapentity.client.add dn=%s", dn)

    def _get_modlist(self, attributes: Mapping[str, Any], modtype: int) -> ModifyModList:
        _modlist: ModifyModList = []
        for key, value in attributes.items():
            values = encode_values(value)
            if modtype == ldap.MOD_DELETE and not values:  # type: ignore[attr-defined]
                # Delete the whole attribute
                _modlist.append((modtype, key, None))
            else:
                _modlist.append((modtype, key, values))
        return _modlist

    def modify(
        self, dn: str, attributes: Mapping[str, Any], mode: str | int = "replace"
    ) -> None:
        """
        Modify the attributes of an existing entry.

        Args:
            dn: the DN of the entry
            attributes: attribute name to value(s)

        Keyword Args:
            mode: ``add``, ``delete`` or ``replace``, or the matching
                python-ldap ``MOD_*`` value.  In ``delete`` mode an empty
                value list removes the whole attribute.

        Raises:
            ValueError: ``mode`` is not a known mode
            ModifyFailed: the server refused the modify

        """
        if isinstance(mode, str):
            try:
                modtype = MODIFY_MODES[mode.lower()]
            except KeyError as e:
                msg = f'Invalid modify mode "{mode}"; use one of {", ".join(MODIFY_MODES)}'
                raise ValueError(msg) from e
        else:
            modtype = mode
        _modlist = self._get_modlist(attributes, modtype)
        if not _modlist:
            self.logger.debug("ldapentity.client.modify.no-changes dn=%s", dn)
            return
        try:
            self.connection.modify_s(dn, _modlist)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            raise self._modify_failed("modify", dn, f'Could not modify "{dn}"', e) from e
        self._succeeded()
        self.logger.info(
            "ldapentity.client.modify dn=%s mode=%s attributes=%s",
            dn,
            mode,
            ",".join(attributes),
        )

    def delete(self, dn: str, recursive: bool = False) -> None:
        """
        Delete the entry at ``dn``.

        With ``recursive``, the immediate children of ``dn`` are listed and
        each child's subtree is deleted, depth first, before ``dn`` itself.  The
        first failure stops the delete; entries already deleted stay deleted.

        Args:
            dn: the DN of the entry

        Keyword Args:
            recursive: delete the whole subtree under ``dn``

        Raises:
            ReadFailed: listing the children of an entry failed
            ModifyFailed: the server refused a delete, e.g. because ``dn`` has
                children and ``recursive`` is false

        """
        if recursive:
            for child in self.list(dn, ANY_OBJECT, attributes=["1.1"]):
                self.delete(child.dn(), recursive=True)
        try:
            self.connection.delete_s(dn)
        except ldap.NOT_ALLOWED_ON_NONLEAF as e:  # type: ignore[attr-defined]
            msg = f'Could not delete "{dn}": it has children'
            raise self._modify_failed("delete", dn, msg, e) from e
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            raise self._modify_failed("delete", dn, f'Could not delete "{dn}"', e) from e
        self._succeeded()
        self.logger.info("ldapentity.client.delete dn=%s", dn)

    def rename(
        self,
        dn: str,
        new_rdn: str,
        new_parent: str | None = None,
        delete_old_rdn: bool = True,
    ) -> None:
        """
        Rename and/or move an entry.

        Args:
            dn: the current DN of the entry
            new_rdn: the new RDN, e.g. ``cn=Alice``

        Keyword Args:
            new_parent: the DN of the new parent; ``None`` to keep the current
                parent
            delete_old_rdn: remove the old RDN value from the entry

        Raises:
            ModifyFailed: the server refused the rename

        """
        try:
            self.connection.rename_s(dn, new_rdn, new_parent, int(delete_old_rdn))
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            raise self._modify_failed("rename", dn, f'Could not rename "{dn}"', e) from e
        self._succeeded()
        self.logger.info(
            "ldapentity.client.rename dn=%s new_rdn=%s new_parent=%s",
            dn,
            new_rdn,
            new_parent,
        )

    def password_modify(
        self, target_dn: str, old: str | None = None, new: str | None = None
    ) -> str | None:
        """
        Change a password with the RFC 3062 password modify extended operation.

        Args:
            target_dn: the DN of the entry whose password to change

        Keyword Args:
            old: the current password, if the server requires it
            new: the new password; ``None`` asks the server to generate one

        Raises:
            ModifyFailed: the server refused the change

        Returns:
            The password the server generated, or ``None``.

        """
        try:
            _, generated = self.connection.passwd_s(
                target_dn, old, new, extract_newpw=True
            )
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            msg = f'Could not change the password of "{target_dn}"'
            raise self._modify_failed("password_modify", target_dn, msg, e) from e
        self._succeeded()
        self.logger.info("ldapentity.client.password_modify.success dn=%s", target_dn)
        if generated is None:
            return None
        if isinstance(generated, bytes):
            return generated.decode("utf-8")
        return str(generated)

