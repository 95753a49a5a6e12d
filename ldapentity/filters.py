"""
Search filters.

Values that come from callers are escaped with python-ldap's
:py:func:`ldap.filter.escape_filter_chars` before they reach a filter string,
and the filters themselves are composed with :py:class:`ldap_filter.Filter`.
"""

from typing import Any

from django.utils.encoding import force_str
from ldap.filter import escape_filter_chars
from ldap_filter import Filter

#: The filter we use when we want every entry.
ANY_OBJECT: str = "(objectClass=*)"
#: The filter entities are loaded through.
NAMED_OBJECT: str = "(name=*)"

USER_CLASS = "user"
GROUP_CLASS = "group"
ORGANIZATIONAL_UNIT_CLASS = "organizationalUnit"


def escape_filter_value(value: Any) -> str:
    """
    Escape an untrusted value for an LDAP search filter, per RFC 4515.

    ``*``, ``(``, ``)``, ``\\`` and NUL become ``\\XX`` hex escapes.  Bytes are
    decoded as UTF-8 first.

    Args:
        value: the value to escape

    Returns:
        The escaped value.

    """
    return escape_filter_chars(force_str(value))


def object_class_filter(object_class: str, **equalities: str) -> str:
    """
    Build a filter matching entries of ``object_class``.

    Users and groups are also required to have a ``cn``, and organizational
    units an ``ou``, so that half-provisioned entries don't show up in
    listings.  Each keyword argument adds an equality clause whose value is
    escaped.

    Example:
        ``object_class_filter("user", cn="Doe, John")`` gives a filter
        equivalent to ``(&(objectClass=user)(cn=*)(cn=Doe, John))``.

    Args:
        object_class: the ``objectClass`` to match

    Keyword Args:
        **equalities: attribute/value pairs that must match exactly

    Returns:
        The filter string.

    """
    naming = "ou" if object_class == ORGANIZATIONAL_UNIT_CLASS else "cn"
    clauses = [
        Filter.attribute("objectClass").equal_to(object_class),
        Filter.attribute(naming).present(),
    ]
    for attr, value in equalities.items():
        clauses.append(Filter.attribute(attr).equal_to(force_str(value)))
    return Filter.AND(clauses).to_string()


def users_filter(**equalities: str) -> str:
    return object_class_filter(USER_CLASS, **equalities)


def groups_filter(**equalities: str) -> str:
    return object_class_filter(GROUP_CLASS, **equalities)


def organizational_units_filter(**equalities: str) -> str:
    return object_class_filter(ORGANIZATIONAL_UNIT_CLASS, **equalities)
