"""
Tests for DirectoryClient.

The python-ldap connection is replaced by a Mock, so these exercise our option
handling, result conversion and error mapping rather than a live server.
"""

import logging
import tempfile
import unittest
from unittest.mock import Mock, call, patch

import ldap
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.test import override_settings
from ldap.controls import SimplePagedResultsControl

from ldapentity.client import DirectoryClient, encode_values
from ldapentity.exceptions import (
    BindAuthFailed,
    ConnectFailed,
    InvalidArgument,
    ModifyFailed,
    ReadFailed,
)
from ldapentity.items import DirectoryEntryItem, encode_sid, next_sid_candidate

LDAP_SERVERS = {
    "default": {
        "basedn": "dc=example,dc=com",
        "read": {
            "url": "ldap://localhost:389",
            "user": "cn=reader,dc=example,dc=com",
            "password": "reader",
            "use_starttls": False,
            "tls_verify": "never",
            "timeout": 15.0,
            "sizelimit": 1000,
            "follow_referrals": False,
        },
        "write": {
            "url": "ldap://localhost:389",
            "user": "cn=admin,dc=example,dc=com",
            "password": "admin",
            "use_starttls": False,
            "tls_verify": "never",
        },
    }
}

# Configure Django settings for testing
if not settings.configured:
    settings.configure(LDAP_SERVERS=LDAP_SERVERS)


def make_client(**options):
    """Return a client wired to a Mock python-ldap connection."""
    client = DirectoryClient(
        "ldap://localhost:389",
        user="cn=admin,dc=example,dc=com",
        password="admin",
        options=options,
    )
    connection = Mock()
    client.set_connection(connection)
    return client, connection


class TestFromSettings(unittest.TestCase):
    """Test building clients from settings.LDAP_SERVERS."""

    @override_settings(LDAP_SERVERS=LDAP_SERVERS)
    def test_from_settings(self):
        client = DirectoryClient.from_settings("default", "read")
        self.assertEqual(client.url, "ldap://localhost:389")
        self.assertEqual(client.user, "cn=reader,dc=example,dc=com")
        self.assertEqual(client.password, "reader")
        self.assertEqual(client.basedn, "dc=example,dc=com")
        self.assertEqual(client.options["sizelimit"], 1000)
        self.assertNotIn("password", client.options)

    @override_settings(LDAP_SERVERS=LDAP_SERVERS)
    def test_unknown_server_or_key(self):
        with self.assertRaises(ImproperlyConfigured):
            DirectoryClient.from_settings("nope")
        with self.assertRaises(ImproperlyConfigured):
            DirectoryClient.from_settings("default", "admin")

    @override_settings(LDAP_SERVERS={})
    def test_no_servers(self):
        with self.assertRaises(ImproperlyConfigured):
            DirectoryClient.from_settings()

    def test_logger(self):
        custom = logging.getLogger("ldapentity.tests.custom")
        self.assertIs(DirectoryClient("ldap://x", logger=custom).logger, custom)
        self.assertEqual(DirectoryClient("ldap://x").logger.name, "ldapentity")


class TestConnect(unittest.TestCase):
    """Test connection setup and binding."""

    def setUp(self):
        patcher = patch("ldapentity.ldap.initialize")
        self.initialize = patcher.start()
        self.addCleanup(patcher.stop)
        self.connection = Mock()
        self.initialize.return_value = self.connection

    def test_connect_and_bind(self):
        client = DirectoryClient(
            "ldap://localhost:389",
            user="cn=admin,dc=example,dc=com",
            password="admin",
            options={"use_starttls": False, "sizelimit": 50},
        )
        client.bind()
        self.initialize.assert_called_once_with("ldap://localhost:389")
        self.connection.set_option.assert_any_call(ldap.OPT_REFERRALS, 0)
        self.connection.set_option.assert_any_call(ldap.OPT_NETWORK_TIMEOUT, 15.0)
        self.connection.set_option.assert_any_call(ldap.OPT_SIZELIMIT, 50)
        self.connection.set_option.assert_any_call(
            ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_NEVER
        )
        self.connection.start_tls_s.assert_not_called()
        self.connection.simple_bind_s.assert_called_once_with(
            "cn=admin,dc=example,dc=com", "admin"
        )
        self.assertEqual(client.last_error(), (0, "Success"))

    def test_starttls_by_default(self):
        client = DirectoryClient("ldap://localhost:389", options={"tls_verify": "always"})
        client.connect()
        self.connection.start_tls_s.assert_called_once_with()
        self.connection.set_option.assert_any_call(
            ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND
        )

    def test_bind_with_explicit_credentials(self):
        client = DirectoryClient("ldap://localhost:389", options={"use_starttls": False})
        client.bind("cn=alice,dc=example,dc=com", "secret")
        self.connection.simple_bind_s.assert_called_once_with(
            "cn=alice,dc=example,dc=com", "secret"
        )

    def test_invalid_tls_verify(self):
        client = DirectoryClient("ldap://localhost:389", options={"tls_verify": "maybe"})
        with self.assertRaises(ValueError):
            client.connect()

    def test_missing_certificate_files(self):
        for option in ("tls_ca_certfile", "tls_certfile", "tls_keyfile"):
            with self.subTest(option=option):
                client = DirectoryClient(
                    "ldap://localhost:389", options={option: "/nonexistent/file.pem"}
                )
                with self.assertRaises(OSError):
                    client.connect()

    def test_certificate_file_is_directory(self):
        with tempfile.TemporaryDirectory() as directory:
            client = DirectoryClient(
                "ldap://localhost:389", options={"tls_ca_certfile": directory}
            )
            with self.assertRaises(OSError):
                client.connect()

    def test_certificate_file(self):
        with tempfile.NamedTemporaryFile(suffix=".pem") as certfile:
            client = DirectoryClient(
                "ldap://localhost:389",
                options={"tls_ca_certfile": certfile.name, "use_starttls": False},
            )
            client.connect()
            self.connection.set_option.assert_any_call(
                ldap.OPT_X_TLS_CACERTFILE, certfile.name
            )

    def test_starttls_failure(self):
        self.connection.start_tls_s.side_effect = ldap.CONNECT_ERROR(
            {"result": -11, "desc": "Connect error"}
        )
        client = DirectoryClient("ldap://localhost:389")
        with self.assertRaises(ConnectFailed):
            client.connect()

    def test_server_down(self):
        self.connection.simple_bind_s.side_effect = ldap.SERVER_DOWN(
            {"result": -1, "desc": "Can't contact LDAP server"}
        )
        client = DirectoryClient("ldap://localhost:389", options={"use_starttls": False})
        with self.assertLogs("ldapentity", level="WARNING"):
            with self.assertRaises(ConnectFailed) as cm:
                client.bind()
        self.assertEqual(cm.exception.code, -1)
        self.assertIn("Can't contact LDAP server", str(cm.exception))

    def test_invalid_credentials(self):
        self.connection.simple_bind_s.side_effect = ldap.INVALID_CREDENTIALS(
            {"result": 49, "desc": "Invalid credentials", "info": "80090308: LdapErr"}
        )
        client = DirectoryClient(
            "ldap://localhost:389",
            user="cn=admin,dc=example,dc=com",
            password="wrong",
            options={"use_starttls": False},
        )
        with self.assertRaises(BindAuthFailed) as cm:
            client.bind()
        self.assertEqual(cm.exception.code, 49)
        self.assertEqual(client.last_error()[0], 49)
        self.assertIn("| 49: Invalid credentials", str(cm.exception))
        self.assertNotIn("wrong", str(cm.exception))

    def test_context_manager(self):
        with DirectoryClient(
            "ldap://localhost:389", options={"use_starttls": False}
        ) as client:
            self.assertIs(client.connection, self.connection)
        self.connection.unbind_s.assert_called_once_with()

    def test_lazy_connection(self):
        client = DirectoryClient("ldap://localhost:389", options={"use_starttls": False})
        self.connection.search_ext_s.return_value = []
        self.assertEqual(client.search("dc=example,dc=com"), [])
        self.initialize.assert_called_once_with("ldap://localhost:389")
        self.connection.simple_bind_s.assert_called_once_with("", "")


class TestSearch(unittest.TestCase):
    """Test searching and result conversion."""

    def setUp(self):
        self.client, self.connection = make_client()

    def test_search(self):
        self.connection.search_ext_s.return_value = [
            ("cn=Alice,ou=Eng,dc=example,dc=com", {"cn": [b"Alice"], "sn": [b"Jones"]}),
            # Active Directory appends referrals
            (None, ["ldap://DomainDnsZones.example.com/DC=DomainDnsZones,DC=example,DC=com"]),
        ]
        items = self.client.search("dc=example,dc=com", "(cn=Alice)", attributes=["cn", "sn"])
        self.connection.search_ext_s.assert_called_once_with(
            "dc=example,dc=com",
            ldap.SCOPE_SUBTREE,
            "(cn=Alice)",
            ["cn", "sn"],
            0,
            timeout=-1,
            sizelimit=0,
        )
        self.assertEqual(len(items), 1)
        self.assertIsInstance(items[0], DirectoryEntryItem)
        self.assertEqual(items[0].dn(), "cn=Alice,ou=Eng,dc=example,dc=com")
        self.assertEqual(items[0].value("sn"), "Jones")
        self.assertEqual(self.client.last_error(), (0, "Success"))

    def test_scopes(self):
        self.connection.search_ext_s.return_value = []
        for scope, expected in (
            ("base", ldap.SCOPE_BASE),
            ("one-level", ldap.SCOPE_ONELEVEL),
            ("onelevel", ldap.SCOPE_ONELEVEL),
            ("subtree", ldap.SCOPE_SUBTREE),
            (ldap.SCOPE_ONELEVEL, ldap.SCOPE_ONELEVEL),
        ):
            with self.subTest(scope=scope):
                self.client.search("dc=example,dc=com", scope=scope)
                self.assertEqual(self.connection.search_ext_s.call_args[0][1], expected)
        with self.assertRaises(ValueError):
            self.client.search("dc=example,dc=com", scope="everywhere")

    def test_read_and_list(self):
        self.connection.search_ext_s.return_value = []
        self.client.read("cn=Alice,dc=example,dc=com", "(name=*)")
        self.assertEqual(
            self.connection.search_ext_s.call_args[0][:3],
            ("cn=Alice,dc=example,dc=com", ldap.SCOPE_BASE, "(name=*)"),
        )
        self.client.list("ou=Eng,dc=example,dc=com")
        self.assertEqual(
            self.connection.search_ext_s.call_args[0][:3],
            ("ou=Eng,dc=example,dc=com", ldap.SCOPE_ONELEVEL, "(objectClass=*)"),
        )

    def test_invalid_filter(self):
        self.connection.search_ext_s.side_effect = ldap.FILTER_ERROR(
            {"result": -7, "desc": "Bad search filter"}
        )
        with self.assertLogs("ldapentity", level="WARNING") as logs:
            with self.assertRaises(InvalidArgument):
                self.client.search("dc=example,dc=com", "(cn=Alice")
        self.assertEqual(self.client.last_error(), (-7, "Bad search filter"))
        self.assertIn("ldapentity.client.search.bad_filter", logs.output[0])

    def test_binary_filter_passed_through(self):
        sid = encode_sid("S-1-5-21-1004336348-1177238915-682003330-1013")
        filterstr = f"(objectSid={next_sid_candidate(sid)})"
        self.connection.search_ext_s.return_value = []
        self.assertEqual(self.client.search("dc=example,dc=com", filterstr), [])
        self.assertEqual(self.connection.search_ext_s.call_args[0][2], filterstr)
        self.assertIn("\\f6\\03\\00\\00", filterstr)

    def test_no_such_object_is_empty(self):
        self.connection.search_ext_s.side_effect = ldap.NO_SUCH_OBJECT(
            {"result": 32, "desc": "No such object"}
        )
        self.assertEqual(self.client.search("ou=Gone,dc=example,dc=com"), [])

    def test_search_failure(self):
        self.connection.search_ext_s.side_effect = ldap.OPERATIONS_ERROR(
            {"result": 1, "desc": "Operations error"}
        )
        with self.assertLogs("ldapentity", level="WARNING") as logs:
            with self.assertRaises(ReadFailed) as cm:
                self.client.search("dc=example,dc=com")
        self.assertEqual(cm.exception.code, 1)
        self.assertEqual(self.client.last_error(), (1, "Operations error"))
        self.assertIn("ldapentity.client.search.failed", logs.output[0])

    def test_paged_search(self):
        client, connection = make_client(paged_search=True, page_size=2)
        connection.search_ext.side_effect = [1, 2]
        connection.result3.side_effect = [
            (
                ldap.RES_SEARCH_RESULT,
                [
                    ("cn=a,dc=example,dc=com", {"cn": [b"a"]}),
                    ("cn=b,dc=example,dc=com", {"cn": [b"b"]}),
                ],
                1,
                [SimplePagedResultsControl(True, size=2, cookie=b"page2")],
            ),
            (
                ldap.RES_SEARCH_RESULT,
                [
                    ("cn=c,dc=example,dc=com", {"cn": [b"c"]}),
                    (None, ["ldap://example.com/CN=Configuration,DC=example,DC=com"]),
                ],
                2,
                [SimplePagedResultsControl(True, size=2, cookie=b"")],
            ),
        ]
        items = client.search("dc=example,dc=com", "(cn=*)")
        self.assertEqual([item.value("cn") for item in items], ["a", "b", "c"])
        self.assertEqual(connection.search_ext.call_count, 2)
        connection.search_ext_s.assert_not_called()


class TestModify(unittest.TestCase):
    """Test add, modify, delete, rename and password changes."""

    def setUp(self):
        self.client, self.connection = make_client()

    def test_encode_values(self):
        self.assertEqual(encode_values("Alice"), [b"Alice"])
        self.assertEqual(encode_values(b"\x00\x01"), [b"\x00\x01"])
        self.assertEqual(encode_values(512), [b"512"])
        self.assertEqual(encode_values(["a", b"b", 3]), [b"a", b"b", b"3"])
        self.assertEqual(encode_values("Jørgen"), ["Jørgen".encode()])
        self.assertEqual(encode_values(None), [])

    def test_add(self):
        self.client.add(
            "cn=Alice,ou=Eng,dc=example,dc=com",
            {"objectClass": ["top", "user"], "cn": "Alice", "userAccountControl": 512},
        )
        dn, modlist = self.connection.add_s.call_args[0]
        self.assertEqual(dn, "cn=Alice,ou=Eng,dc=example,dc=com")
        self.assertIn(("objectClass", [b"top", b"user"]), modlist)
        self.assertIn(("cn", [b"Alice"]), modlist)
        self.assertIn(("userAccountControl", [b"512"]), modlist)

    def test_add_failure(self):
        self.connection.add_s.side_effect = ldap.ALREADY_EXISTS(
            {"result": 68, "desc": "Already exists"}
        )
        with self.assertRaises(ModifyFailed) as cm:
            self.client.add("cn=Alice,dc=example,dc=com", {"cn": "Alice"})
        self.assertEqual(cm.exception.code, 68)
        self.assertEqual(self.client.last_error(), (68, "Already exists"))

    def test_modify_modes(self):
        dn = "cn=Staff,dc=example,dc=com"
        self.client.modify(dn, {"mail": "staff@example.com"})
        self.connection.modify_s.assert_called_with(
            dn, [(ldap.MOD_REPLACE, "mail", [b"staff@example.com"])]
        )
        self.client.modify(dn, {"member": ["cn=a", "cn=b"]}, mode="add")
        self.connection.modify_s.assert_called_with(
            dn, [(ldap.MOD_ADD, "member", [b"cn=a", b"cn=b"])]
        )
        self.client.modify(dn, {"member": ["cn=a"]}, mode=ldap.MOD_DELETE)
        self.connection.modify_s.assert_called_with(
            dn, [(ldap.MOD_DELETE, "member", [b"cn=a"])]
        )
        self.client.modify(dn, {"description": []}, mode="delete")
        self.connection.modify_s.assert_called_with(
            dn, [(ldap.MOD_DELETE, "description", None)]
        )

    def test_modify_invalid_mode(self):
        with self.assertRaises(ValueError):
            self.client.modify("cn=x", {"mail": "x"}, mode="merge")

    def test_modify_nothing(self):
        self.client.modify("cn=x", {})
        self.connection.modify_s.assert_not_called()

    def test_rename(self):
        self.client.rename("cn=Alice,ou=Eng,dc=example,dc=com", "cn=Alice", "ou=Sales,dc=example,dc=com")
        self.connection.rename_s.assert_called_once_with(
            "cn=Alice,ou=Eng,dc=example,dc=com", "cn=Alice", "ou=Sales,dc=example,dc=com", 1
        )

    def test_rename_failure(self):
        self.connection.rename_s.side_effect = ldap.NO_SUCH_OBJECT(
            {"result": 32, "desc": "No such object"}
        )
        with self.assertRaises(ModifyFailed):
            self.client.rename("cn=Gone,dc=example,dc=com", "cn=Gone", None)

    def test_password_modify(self):
        self.connection.passwd_s.return_value = (None, b"generated")
        self.assertEqual(self.client.password_modify("cn=Alice,dc=example,dc=com"), "generated")
        self.connection.passwd_s.assert_called_once_with(
            "cn=Alice,dc=example,dc=com", None, None, extract_newpw=True
        )
        self.connection.passwd_s.return_value = (None, None)
        self.assertIsNone(
            self.client.password_modify("cn=Alice,dc=example,dc=com", "old", "new")
        )

    def test_password_modify_failure(self):
        self.connection.passwd_s.side_effect = ldap.UNWILLING_TO_PERFORM(
            {"result": 53, "desc": "Server is unwilling to perform"}
        )
        with self.assertRaises(ModifyFailed):
            self.client.password_modify("cn=Alice,dc=example,dc=com", new="x")


class TestDelete(unittest.TestCase):
    """Test plain and recursive deletes."""

    PARENT = "ou=Eng,dc=example,dc=com"
    CHILD = "ou=Team,ou=Eng,dc=example,dc=com"
    GRANDCHILD = "cn=Alice,ou=Team,ou=Eng,dc=example,dc=com"

    def setUp(self):
        self.client, self.connection = make_client()
        tree = {
            self.PARENT: [(self.CHILD, {})],
            self.CHILD: [(self.GRANDCHILD, {})],
            self.GRANDCHILD: [],
        }
        self.connection.search_ext_s.side_effect = (
            lambda base, scope, *args, **kwargs: tree[base]
        )
        self.deleted = []
        self.connection.delete_s.side_effect = self.deleted.append

    def test_delete(self):
        self.client.delete(self.GRANDCHILD)
        self.assertEqual(self.deleted, [self.GRANDCHILD])
        self.connection.search_ext_s.assert_not_called()
        self.assertEqual(self.client.last_error(), (0, "Success"))

    def test_delete_non_leaf(self):
        self.connection.delete_s.side_effect = ldap.NOT_ALLOWED_ON_NONLEAF(
            {"result": 66, "desc": "Operation not allowed on non-leaf"}
        )
        with self.assertLogs("ldapentity", level="WARNING"):
            with self.assertRaises(ModifyFailed) as cm:
                self.client.delete(self.PARENT)
        self.assertEqual(cm.exception.code, 66)
        self.assertEqual(self.client.last_error()[0], 66)

    def test_recursive_delete_order(self):
        self.client.delete(self.PARENT, recursive=True)
        self.assertEqual(self.deleted, [self.GRANDCHILD, self.CHILD, self.PARENT])
        for c in self.connection.search_ext_s.call_args_list:
            self.assertEqual(c[0][1], ldap.SCOPE_ONELEVEL)
            self.assertEqual(c[0][2], "(objectClass=*)")

    def test_recursive_delete_aborts(self):
        def delete_s(dn):
            if dn == self.GRANDCHILD:
                raise ldap.INSUFFICIENT_ACCESS({"result": 50, "desc": "Insufficient access"})
            self.deleted.append(dn)

        self.connection.delete_s.side_effect = delete_s
        with self.assertRaises(ModifyFailed):
            self.client.delete(self.PARENT, recursive=True)
        self.assertEqual(self.deleted, [])
        self.assertEqual(self.connection.delete_s.call_args_list, [call(self.GRANDCHILD)])

    def test_recursive_delete_list_failure(self):
        self.connection.search_ext_s.side_effect = ldap.OPERATIONS_ERROR(
            {"result": 1, "desc": "Operations error"}
        )
        with self.assertRaises(ReadFailed):
            self.client.delete(self.PARENT, recursive=True)
        self.connection.delete_s.assert_not_called()


if __name__ == "__main__":
    unittest.main()
