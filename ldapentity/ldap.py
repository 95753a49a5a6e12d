# DirectoryClient reaches python-ldap through this module so that tests can
# patch ``ldapentity.ldap.initialize`` without touching the real ``ldap``
# package.
import ldap
from ldap import *  # noqa: F403

__version__ = ldap.__version__
