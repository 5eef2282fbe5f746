"""
LDAP Authn - Authenticate users against an LDAP directory and resolve their groups.

This package provides the directory connector behind a Kubernetes
authentication webhook: it verifies a username and password with the
directory and returns the user's distinguished name and group names.
"""

__version__ = "1.0.0"
__author__ = "LDAP Authn Team"

from ldap_authn.authenticator import (
    AuthFailure,
    AuthenticationAttempt,
    AuthenticationError,
    LDAPAuthenticator,
)
from ldap_authn.channel import ConnectionFailure, DirectoryError, LDAPConnectionError
from ldap_authn.config import ConfigurationError, DirectoryConfig, TLSMode
from ldap_authn.identity import ResolvedIdentity

__all__ = [
    'AuthFailure',
    'AuthenticationAttempt',
    'AuthenticationError',
    'ConfigurationError',
    'ConnectionFailure',
    'DirectoryConfig',
    'DirectoryError',
    'LDAPAuthenticator',
    'LDAPConnectionError',
    'ResolvedIdentity',
    'TLSMode',
]
