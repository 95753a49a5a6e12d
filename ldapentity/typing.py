"""
ldapentity type definitions.

Type aliases for the data structures python-ldap hands us and expects back.
"""

from typing import Any

DeleteModListEntry = tuple[int, str, None]
ModifyModListEntry = tuple[int, str, list[bytes]]
ModifyModList = list[DeleteModListEntry | ModifyModListEntry]
AddModlist = list[tuple[str, list[bytes]]]
LDAPData = tuple[str, dict[str, list[bytes]]]
#: One nested search-result structure, as wrapped by ``AttributeBag``
RawBag = dict[int | str, Any]
#: Attribute maps passed to add/modify: values may be scalars or lists
AttributeMap = dict[str, Any]
