"""
Two-phase LDAP authentication.

An attempt binds as the service account to find the user entry, binds as
that entry with the caller's password, re-binds as the service account to
resolve group membership, and returns a ResolvedIdentity. The directory's own
bind is the only check of the password.

Each attempt is a linear state machine:

    IDLE -> CHANNEL_OPEN -> SERVICE_BOUND -> USER_FOUND
         -> CREDENTIAL_VERIFIED -> DONE

with FAILED reachable from every step.
"""

import logging
from enum import Enum
from typing import Optional

from ldap_authn.channel import (
    ConnectionFailure,
    Deadline,
    DirectoryChannel,
    DirectoryError,
    LDAPConnectionError,
)
from ldap_authn.filters import user_search_request
from ldap_authn.groups import GroupResolver
from ldap_authn.identity import ResolvedIdentity, assemble_identity
from ldap_authn.logging_setup import security_logger

logger = logging.getLogger(__name__)

GENERIC_DENIAL = "authentication failed"
SERVICE_UNAVAILABLE = "authentication service unavailable"


class AuthFailure(Enum):
    SERVICE_BIND_FAILED = 'service_bind_failed'
    USER_NOT_FOUND = 'user_not_found'
    AMBIGUOUS_USER = 'ambiguous_user'
    INVALID_CREDENTIALS = 'invalid_credentials'


class AuthenticationError(Exception):
    """
    Raised when an attempt is denied.

    The string form is safe to show to the end user: user-not-found,
    ambiguous-user and invalid-credentials all read the same. The kind and
    detail attributes are for operator logs only.
    """

    def __init__(self, kind: AuthFailure, detail: str = ""):
        self.kind = kind
        self.detail = detail
        super().__init__(self.public_message)

    @property
    def public_message(self) -> str:
        if self.kind is AuthFailure.SERVICE_BIND_FAILED:
            return SERVICE_UNAVAILABLE
        return GENERIC_DENIAL


class AuthState(Enum):
    IDLE = 'idle'
    CHANNEL_OPEN = 'channel_open'
    SERVICE_BOUND = 'service_bound'
    USER_FOUND = 'user_found'
    CREDENTIAL_VERIFIED = 'credential_verified'
    DONE = 'done'
    FAILED = 'failed'


_TRANSITIONS = {
    AuthState.IDLE: AuthState.CHANNEL_OPEN,
    AuthState.CHANNEL_OPEN: AuthState.SERVICE_BOUND,
    AuthState.SERVICE_BOUND: AuthState.USER_FOUND,
    AuthState.USER_FOUND: AuthState.CREDENTIAL_VERIFIED,
    AuthState.CREDENTIAL_VERIFIED: AuthState.DONE,
}


def _is_utf8(text: str) -> bool:
    try:
        text.encode('utf-8')
    except UnicodeEncodeError:
        return False
    return True


class AuthenticationAttempt:
    """
    A single authentication attempt.

    run() executes the attempt on the calling thread; cancel() may be called
    from any other thread and closes the connection promptly.
    """

    def __init__(self, config, username: str, password: str, timeout: Optional[float] = None):
        self.config = config
        self.username = username
        self._password = password
        self.deadline = Deadline(config.timeout if timeout is None else timeout)
        self.state = AuthState.IDLE
        self.failure = None
        self.channel = DirectoryChannel(config, self.deadline)

    def cancel(self) -> None:
        """Abandon the attempt and release its connection."""
        logger.info(f"Cancelling authentication attempt for {self.username!r}")
        self.channel.cancel()

    def run(self) -> ResolvedIdentity:
        """
        Execute the attempt.

        Returns:
            The resolved identity

        Raises:
            AuthenticationError: If the attempt is denied
            LDAPConnectionError: If the directory is unreachable, slow, or the attempt was cancelled
            DirectoryError: If the directory response is malformed or the attempt fails unexpectedly
        """
        if self.state is not AuthState.IDLE:
            raise RuntimeError(f"Authentication attempt already ran (state: {self.state.value})")

        try:
            identity = self._run()
        except (AuthenticationError, LDAPConnectionError, DirectoryError) as e:
            self._fail(e)
            raise
        except Exception as e:
            error = DirectoryError(f"Unexpected error during authentication: {type(e).__name__}: {e}")
            self._fail(error)
            raise error from e
        finally:
            self._password = None

        security_logger.log_authentication_attempt('ldap', self.username, True)
        return identity

    def _run(self) -> ResolvedIdentity:
        # Checked before any network traffic: an empty password would be an
        # unauthenticated bind, which many servers accept.
        if not self.username:
            raise AuthenticationError(AuthFailure.USER_NOT_FOUND, "empty username")
        if not _is_utf8(self.username):
            raise AuthenticationError(AuthFailure.USER_NOT_FOUND, "username is not valid UTF-8")
        if not self._password:
            raise AuthenticationError(AuthFailure.INVALID_CREDENTIALS, "empty password")
        if not _is_utf8(self._password):
            raise AuthenticationError(AuthFailure.INVALID_CREDENTIALS, "password is not valid UTF-8")

        with self.channel as channel:
            channel.open()
            self._advance(AuthState.CHANNEL_OPEN)

            self._bind_service(channel)
            self._advance(AuthState.SERVICE_BOUND)

            entry = self._find_user(channel)
            self._advance(AuthState.USER_FOUND)

            self._verify_credential(channel, entry.dn)
            self._advance(AuthState.CREDENTIAL_VERIFIED)

            # The connection is now bound as the user
            self._bind_service(channel)
            groups = GroupResolver(self.config).resolve(channel, entry.dn)

            display_name = entry.first(self.config.user_attribute) or self.username
            identity = assemble_identity(entry.dn, display_name, groups)
            self._advance(AuthState.DONE)

        logger.info(f"Authenticated {identity.username!r} as {identity.distinguished_name} "
                    f"with {len(identity.groups)} groups")
        return identity

    def _advance(self, state: AuthState) -> None:
        expected = _TRANSITIONS.get(self.state)
        if state is not expected:
            raise RuntimeError(f"Invalid transition {self.state.value} -> {state.value}")
        if self.channel.cancelled:
            raise LDAPConnectionError(ConnectionFailure.CANCELLED, f"attempt cancelled before {state.value}")
        logger.debug(f"Authentication state {self.state.value} -> {state.value}")
        self.state = state

    def _fail(self, error: Exception) -> None:
        previous = self.state
        self.state = AuthState.FAILED
        self.failure = error
        reason = error.kind.value if hasattr(error, 'kind') else type(error).__name__
        if isinstance(error, AuthenticationError):
            logger.info(f"Authentication denied after {previous.value}: {reason} ({error.detail})")
        else:
            logger.warning(f"Authentication attempt failed after {previous.value}: {error}")
        security_logger.log_authentication_attempt('ldap', self.username, False, reason)

    def _bind_service(self, channel) -> None:
        if not channel.bind(self.config.bind_dn, self.config.bind_password):
            who = self.config.bind_dn or 'anonymous'
            raise AuthenticationError(AuthFailure.SERVICE_BIND_FAILED, f"service bind as {who} rejected")

    def _find_user(self, channel):
        request = user_search_request(self.config, self.username)
        entries = channel.search(request)
        if not entries:
            raise AuthenticationError(AuthFailure.USER_NOT_FOUND,
                                      f"no entry matches {request.filter} under {request.base_dn!r}")
        if len(entries) > 1:
            raise AuthenticationError(AuthFailure.AMBIGUOUS_USER,
                                      f"more than one entry matches {request.filter} under {request.base_dn!r}")
        return entries[0]

    def _verify_credential(self, channel, user_dn: str) -> None:
        if not channel.bind(user_dn, self._password):
            raise AuthenticationError(AuthFailure.INVALID_CREDENTIALS, f"bind as {user_dn} rejected")


class LDAPAuthenticator:
    """
    Entry point for resolving a username and password into an identity.

    Holds only the immutable configuration, so one instance can serve any
    number of concurrent callers.
    """

    def __init__(self, config):
        """
        Initialize the authenticator.

        Args:
            config: Validated DirectoryConfig
        """
        self.config = config

    def begin(self, username: str, password: str, timeout: Optional[float] = None) -> AuthenticationAttempt:
        """Create an attempt that the caller can run and, if needed, cancel."""
        return AuthenticationAttempt(self.config, username, password, timeout)

    def authenticate(self, username: str, password: str, timeout: Optional[float] = None) -> ResolvedIdentity:
        """
        Authenticate a user and resolve their groups.

        Args:
            username: Name as typed by the user
            password: Password to verify with the directory
            timeout: Overall deadline in seconds (defaults to config.timeout)

        Returns:
            ResolvedIdentity for the authenticated user
        """
        return self.begin(username, password, timeout).run()
