"""
Directory object kinds: the generic ``top`` entity, users, groups and
organizational units.

An entity is a snapshot: it pairs the :py:class:`~ldapentity.items.DirectoryEntryItem`
read from the directory with its :py:class:`~ldapentity.dn.DistinguishedName`
and the :py:class:`~ldapentity.client.DirectoryClient` it came from.
Operations that change the entry in the directory (``move``, ``delete``,
``update_attributes``, membership changes) do not refresh the snapshot; call
:py:meth:`TopEntity.reload` for a fresh one.
"""

from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any, ClassVar, TypeVar

from .dn import DistinguishedName
from .exceptions import DataInvalid, ReadFailed
from .filters import (
    NAMED_OBJECT,
    groups_filter,
    organizational_units_filter,
    users_filter,
)
from .items import DirectoryEntryItem
from .typing import AttributeMap

if TYPE_CHECKING:
    from .client import DirectoryClient

T = TypeVar("T", bound="TopEntity")

Item = DirectoryEntryItem


class TopEntity:
    """
    A directory entry of any kind.

    Don't instantiate this directly; use :py:meth:`load_by_dn`,
    :py:meth:`find_by_dn` or a subclass's ``create``.

    Args:
        client: the client the entry was read through
        item: the entry as read
        dn_entity: the entry's DN

    """

    #: The kind of directory object this class represents.
    kind: ClassVar[str] = "top"
    #: The object classes we give entries we create.
    object_classes: ClassVar[tuple[str, ...]] = ("top",)
    #: The DN attribute type whose first value becomes ``name`` on create.
    naming_kind: ClassVar[str | None] = None

    def __init__(
        self, client: "DirectoryClient", item: DirectoryEntryItem, dn_entity: DistinguishedName
    ) -> None:
        self.client = client
        self.item = item
        self.dn_entity = dn_entity

    # -----------------------
    # Loading
    # -----------------------

    @classmethod
    def _from_item(cls: type[T], client: "DirectoryClient", item: DirectoryEntryItem) -> T:
        if item.has_attribute(Item.DISTINGUISHED_NAME):
            dn = item.value(Item.DISTINGUISHED_NAME)
        else:
            dn = item.dn()
        return cls(client, item, DistinguishedName.parse(dn))

    @classmethod
    def find_by_dn(cls: type[T], client: "DirectoryClient", dn: str) -> T | None:
        """
        Load the entry at ``dn``, or return ``None`` if there isn't one.

        Args:
            client: the client to read through
            dn: the DN of the entry

        Raises:
            ReadFailed: the read failed
            InvalidArgument: the DN the server reported is outside the
                ``cn``/``ou``/``dc`` subset

        """
        items = client.read(dn, NAMED_OBJECT)
        if not items:
            return None
        return cls._from_item(client, items[0])

    @classmethod
    def load_by_dn(cls: type[T], client: "DirectoryClient", dn: str) -> T:
        """
        Load the entry at ``dn``.

        The entity's DN is taken from the entry's ``distinguishedName``
        attribute (or the DN the server reported for the entry), not from
        ``dn``.

        Args:
            client: the client to read through
            dn: the DN of the entry

        Raises:
            ReadFailed: the read failed, or there is no entry at ``dn``

        """
        entity = cls.find_by_dn(client, dn)
        if entity is None:
            msg = f'No {cls.kind} entry found at "{dn}"'
            raise ReadFailed(msg)
        return entity

    def reload(self: T) -> T:
        """
        Read this entry again and return a fresh entity for it.
        """
        return self.load_by_dn(self.client, self.dn())

    @classmethod
    def _create(
        cls: type[T],
        client: "DirectoryClient",
        dn_entity: DistinguishedName,
        attributes: Mapping[str, Any] | None = None,
    ) -> T:
        entry: AttributeMap = {Item.OBJECT_CLASS: list(cls.object_classes)}
        if cls.naming_kind is not None:
            name = dn_entity.first(cls.naming_kind)
            if name is not None:
                entry[Item.NAME] = name
        if attributes:
            entry.update(attributes)
        dn = dn_entity.serialize()
        client.add(dn, entry)
        client.logger.info("ldapentity.entities.create kind=%s dn=%s", cls.kind, dn)
        return cls.load_by_dn(client, dn)

    # -----------------------
    # Capabilities
    # -----------------------

    def dn(self) -> str:
        return self.dn_entity.serialize()

    def name(self) -> str:
        """
        Return the ``name`` attribute of this entry.

        Raises:
            KeyNotFound: the entry has no ``name``

        """
        return self.item.value(Item.NAME)

    def entity_kind(self) -> str:
        return self.kind

    @property
    def distinguished_name(self) -> DistinguishedName:
        return self.dn_entity

    def _optional(self, attr: str) -> Any:
        try:
            return self.item.value(attr)
        except DataInvalid:
            return None

    # -----------------------
    # Mutations
    # -----------------------

    def move(self, new_location: DistinguishedName) -> None:
        """
        Move and/or rename this entry to ``new_location``.

        Raises:
            InvalidArgument: ``new_location`` is empty
            ModifyFailed: the server refused the rename

        """
        rdn, parent = new_location.split_into_rdn_and_parent()
        self.client.rename(self.dn(), rdn, parent or None, delete_old_rdn=True)

    def delete(self, recursive: bool = False) -> None:
        """
        Delete this entry.

        Keyword Args:
            recursive: delete everything under this entry first

        Raises:
            ModifyFailed: the server refused a delete.  Without ``recursive``,
                this is what happens if the entry has children.

        """
        self.client.delete(self.dn(), recursive=recursive)

    def update_attributes(self, attributes: Mapping[str, Any]) -> None:
        """
        Replace the values of ``attributes`` on this entry.
        """
        self.client.modify(self.dn(), attributes, mode="replace")

    def __str__(self) -> str:
        return f"{{{self.kind}|{self.dn()}}}"

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}: {self.dn()}>"


class User(TopEntity):
    """
    A user account.
    """

    kind = "user"
    object_classes = ("top", "person", "organizationalPerson", "user")
    naming_kind = "cn"

    #: ``userAccountControl`` bit for a disabled account.
    ACCOUNTDISABLE: ClassVar[int] = 0x2

    @classmethod
    def create(
        cls,
        client: "DirectoryClient",
        dn_entity: DistinguishedName,
        attributes: Mapping[str, Any] | None = None,
    ) -> "User":
        """
        Add a user entry at ``dn_entity`` and load it.

        ``name`` is set to the first ``cn`` of ``dn_entity``.

        Args:
            client: the client to write through
            dn_entity: where to create the user
            attributes: any other attributes to set

        Raises:
            ModifyFailed: the server refused the add

        """
        return cls._create(client, dn_entity, attributes)

    def surname(self) -> str | None:
        return self._optional(Item.SURNAME)

    def given_name(self) -> str | None:
        return self._optional(Item.GIVEN_NAME)

    def display_name(self) -> str | None:
        return self._optional(Item.DISPLAY_NAME)

    def company(self) -> str | None:
        return self._optional(Item.COMPANY)

    def department(self) -> str | None:
        return self._optional(Item.DEPARTMENT)

    def title(self) -> str | None:
        return self._optional(Item.TITLE)

    def description(self) -> str | None:
        return self._optional(Item.DESCRIPTION)

    def mail(self) -> str | None:
        return self._optional(Item.MAIL)

    def sam_account_name(self) -> str | None:
        return self._optional(Item.SAM_ACCOUNT_NAME)

    def user_principal_name(self) -> str | None:
        return self._optional(Item.USER_PRINCIPAL_NAME)

    def member_of(self) -> list[str]:
        """
        Return the DNs of the groups this user belongs to.
        """
        if not self.item.has_attribute(Item.MEMBER_OF):
            return []
        return self.item.values(Item.MEMBER_OF)

    def account_disabled(self) -> bool:
        """
        Return ``True`` if the ``ACCOUNTDISABLE`` bit of
        ``userAccountControl`` is set.
        """
        value = self._optional(Item.USER_ACCOUNT_CONTROL)
        if value is None:
            return False
        return bool(int(value) & self.ACCOUNTDISABLE)

    def change_password(self, new_password: str, old_password: str | None = None) -> None:
        """
        Change this user's password with the password modify extended
        operation.

        Args:
            new_password: the new password

        Keyword Args:
            old_password: the current password, if the server wants it

        Raises:
            ModifyFailed: the server refused the change

        """
        self.client.password_modify(self.dn(), old=old_password, new=new_password)

    @staticmethod
    def hash_unicode_password(password: str) -> bytes:
        """
        Return ``password`` as Active Directory wants it in ``unicodePwd``:
        surrounded by double quotes and encoded as UTF-16-LE.
        """
        return f'"{password}"'.encode("utf-16-le")

    def set_unicode_password(self, password: str) -> None:
        """
        Set this user's Active Directory password by replacing ``unicodePwd``.

        Active Directory only accepts this over an encrypted connection.

        Raises:
            ModifyFailed: the server refused the change

        """
        self.client.modify(
            self.dn(),
            {Item.UNICODE_PASSWORD: [self.hash_unicode_password(password)]},
            mode="replace",
        )


class MemberListEntity(TopEntity):
    """
    An entry that lists member DNs in its ``member`` attribute.
    """

    def member_dns(self) -> list[str]:
        """
        Return the DNs in this entry's ``member`` attribute, as of when it
        was loaded.
        """
        if not self.item.has_attribute(Item.MEMBER):
            return []
        return self.item.values(Item.MEMBER)

    def members(self) -> list[User]:
        """
        Load each member as a :py:class:`User`.

        Raises:
            ReadFailed: a member could not be loaded

        """
        return [User.load_by_dn(self.client, dn) for dn in self.member_dns()]

    def add_members(self, dns: Iterable[str]) -> None:
        """
        Add ``dns`` to this entry's members.  Duplicates are not checked for.
        """
        self.client.modify(self.dn(), {Item.MEMBER: list(dns)}, mode="add")

    def remove_members(self, dns: Iterable[str]) -> None:
        """
        Remove ``dns`` from this entry's members.
        """
        members = list(dns)
        if not members:
            # An empty delete would remove every member
            return
        self.client.modify(self.dn(), {Item.MEMBER: members}, mode="delete")

    def set_members(self, dns: Iterable[str]) -> None:
        """
        Replace this entry's members with ``dns``.
        """
        self.client.modify(self.dn(), {Item.MEMBER: list(dns)}, mode="replace")


class Group(MemberListEntity):
    """
    A group.  Members are stored as DNs in the ``member`` attribute.
    """

    kind = "group"
    object_classes = ("top", "group")

    @classmethod
    def create(
        cls,
        client: "DirectoryClient",
        dn_entity: DistinguishedName,
        attributes: Mapping[str, Any] | None = None,
    ) -> "Group":
        """
        Add a group entry at ``dn_entity`` and load it.

        Raises:
            ModifyFailed: the server refused the add

        """
        return cls._create(client, dn_entity, attributes)

class OrganizationalUnit(MemberListEntity):
    """
    An organizational unit, which contains users, groups and other
    organizational units.  Where the schema allows it, an organizational unit
    can also list members in its ``member`` attribute.
    """

    kind = "organizationalUnit"
    object_classes = ("top", "organizationalUnit")
    naming_kind = "ou"

    @classmethod
    def create(
        cls,
        client: "DirectoryClient",
        dn_entity: DistinguishedName,
        attributes: Mapping[str, Any] | None = None,
    ) -> "OrganizationalUnit":
        """
        Add an organizational unit entry at ``dn_entity`` and load it.

        ``name`` is set to the first ``ou`` of ``dn_entity``.

        Raises:
            ModifyFailed: the server refused the add

        """
        return cls._create(client, dn_entity, attributes)

    def ou(self) -> str | None:
        return self._optional(Item.ORGANIZATIONAL_UNIT)

    def create_sub_organizational_unit(
        self, name: str, attributes: Mapping[str, Any] | None = None
    ) -> "OrganizationalUnit":
        return OrganizationalUnit.create(
            self.client, self.dn_entity.make_child("ou", name), attributes
        )

    def create_sub_user(self, name: str, attributes: Mapping[str, Any] | None = None) -> User:
        return User.create(self.client, self.dn_entity.make_child("cn", name), attributes)

    def create_sub_group(
        self, name: str, attributes: Mapping[str, Any] | None = None
    ) -> Group:
        return Group.create(self.client, self.dn_entity.make_child("cn", name), attributes)

    def _children(self, entity_class: type[T], filterstr: str) -> list[T]:
        return [
            entity_class.load_by_dn(self.client, item.dn())
            for item in self.client.list(self.dn(), filterstr, attributes=["1.1"])
        ]

    def _child(self, entity_class: type[T], filterstr: str) -> T | None:
        children = self._children(entity_class, filterstr)
        return children[0] if children else None

    def sub_users(self) -> list[User]:
        """
        Load the users directly inside this organizational unit.
        """
        return self._children(User, users_filter())

    def sub_groups(self) -> list[Group]:
        """
        Load the groups directly inside this organizational unit.
        """
        return self._children(Group, groups_filter())

    def sub_organizational_units(self) -> list["OrganizationalUnit"]:
        """
        Load the organizational units directly inside this one.
        """
        return self._children(OrganizationalUnit, organizational_units_filter())

    def sub_user_by_name(self, name: str) -> User | None:
        """
        Load the user directly inside this organizational unit whose ``cn`` is
        ``name``, or return ``None``.
        """
        return self._child(User, users_filter(cn=name))

    def sub_group_by_name(self, name: str) -> Group | None:
        return self._child(Group, groups_filter(cn=name))

    def sub_organizational_unit_by_name(self, name: str) -> "OrganizationalUnit | None":
        return self._child(OrganizationalUnit, organizational_units_filter(ou=name))
