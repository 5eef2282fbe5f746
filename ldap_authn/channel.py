"""
Secure channel to the LDAP directory.

This module opens the network connection for one authentication attempt,
brings it to the requested TLS posture, and exposes the bind and search
operations the authenticator needs. Every operation is bounded by the
attempt's deadline and every ldap3 or socket failure is translated into
the connector's own error types.
"""

import ssl
import math
import time
import socket
import logging
import threading
from enum import Enum
from typing import Any, Dict, List, Optional

import attrs
from ldap3 import Server, Connection, Tls, NONE, AUTO_BIND_NONE, ANONYMOUS, SIMPLE, DEREF_NEVER
from ldap3.core.exceptions import (
    LDAPException,
    LDAPCommunicationError,
    LDAPResponseTimeoutError,
    LDAPSocketOpenError,
    LDAPStartTLSError,
    LDAPSSLConfigurationError,
)

from ldap_authn.config import TLSMode

logger = logging.getLogger(__name__)

RESULT_SUCCESS = 0
RESULT_TIME_LIMIT_EXCEEDED = 3
RESULT_SIZE_LIMIT_EXCEEDED = 4

_TRANSPORT_ERRORS = (LDAPCommunicationError, LDAPResponseTimeoutError, OSError)
_TIMEOUT_ERRORS = (LDAPResponseTimeoutError, socket.timeout, TimeoutError)
_HANDSHAKE_ERRORS = (ssl.SSLError, LDAPStartTLSError, LDAPSSLConfigurationError)


class ConnectionFailure(Enum):
    DIAL_FAILED = 'dial_failed'
    HANDSHAKE_FAILED = 'handshake_failed'
    TIMEOUT = 'timeout'
    CANCELLED = 'cancelled'


class LDAPConnectionError(Exception):
    """Raised when the directory cannot be reached or the channel breaks."""

    def __init__(self, kind: ConnectionFailure, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"{kind.value}: {message}")
        self.kind = kind
        self.cause = cause


class DirectoryError(Exception):
    """Raised when the directory returns a malformed or unexpected response."""
    pass


class Deadline:
    """Overall time budget shared by every step of one attempt."""

    def __init__(self, timeout: Optional[float]):
        self.timeout = timeout
        self.expires_at = None if timeout is None else time.monotonic() + timeout

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    def expired(self) -> bool:
        return self.expires_at is not None and time.monotonic() >= self.expires_at

    def check(self, operation: str) -> Optional[float]:
        """Return the remaining seconds, or raise if none are left."""
        if self.expired():
            raise LDAPConnectionError(
                ConnectionFailure.TIMEOUT,
                f"deadline of {self.timeout}s exceeded before {operation}")
        return self.remaining()


def _receive_timeout(remaining: Optional[float]) -> Optional[int]:
    # ldap3 packs the receive timeout into SO_RCVTIMEO as whole seconds
    if remaining is None:
        return None
    return max(1, math.ceil(remaining))


def _linked_errors(error: BaseException) -> List[BaseException]:
    """Return error with its chained causes and any per-address errors ldap3 collected."""
    errors = [error]
    for linked in (error.__cause__, error.__context__):
        if linked is not None:
            errors.append(linked)
    for arg in error.args:
        if isinstance(arg, list):
            errors.extend(item[0] for item in arg
                          if isinstance(item, tuple) and item and isinstance(item[0], BaseException))
    return errors


def _normalize_values(value) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        value = [value]
    values = []
    for item in value:
        if isinstance(item, bytes):
            item = item.decode('utf-8', errors='replace')
        values.append(str(item))
    return values


@attrs.define(frozen=True, slots=True)
class DirectoryEntry:
    """A search result entry with case-insensitive attribute lookup."""

    dn: str
    attributes: Dict[str, List[str]] = attrs.field(factory=dict)

    @classmethod
    def from_response(cls, dn: str, attributes: Dict[str, Any]) -> 'DirectoryEntry':
        return cls(dn=dn, attributes={
            name.lower(): _normalize_values(value) for name, value in attributes.items()
        })

    def get(self, name: str) -> List[str]:
        return self.attributes.get(name.lower(), [])

    def first(self, name: str) -> Optional[str]:
        values = self.get(name)
        return values[0] if values else None


class DirectoryChannel:
    """
    One connection to the directory, owned by a single authentication attempt.

    Use as a context manager; close() is idempotent and may be called from
    another thread to abandon an attempt in flight.
    """

    def __init__(self, config, deadline: Optional[Deadline] = None):
        """
        Initialize the channel.

        Args:
            config: Validated DirectoryConfig
            deadline: Time budget for the attempt (defaults to config.timeout)
        """
        self.config = config
        self.deadline = deadline or Deadline(config.timeout)
        self.server = None
        self.connection = None
        self._lock = threading.Lock()
        self._closed = False
        self._cancelled = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def open(self) -> None:
        """
        Connect to the directory and secure the channel.

        Raises:
            LDAPConnectionError: On dial, TLS handshake, StartTLS or timeout failure
        """
        remaining = self.deadline.check('connect')
        use_ssl = self.config.tls_mode is TLSMode.IMPLICIT_TLS

        try:
            self.server = Server(
                self.config.server_address,
                port=int(self.config.server_port),
                use_ssl=use_ssl,
                tls=self._create_tls_config(),
                get_info=NONE,
                connect_timeout=remaining,
            )
            connection = Connection(
                self.server,
                auto_bind=AUTO_BIND_NONE,
                receive_timeout=_receive_timeout(remaining),
                raise_exceptions=False,
                read_only=True,
            )
        except LDAPSSLConfigurationError as e:
            raise LDAPConnectionError(ConnectionFailure.HANDSHAKE_FAILED,
                                      f"invalid TLS configuration: {e}", e)
        except Exception as e:
            raise LDAPConnectionError(ConnectionFailure.DIAL_FAILED,
                                      f"cannot create connection to {self.config.address}: {e}", e)

        with self._lock:
            if self._closed:
                raise self._cancelled_error('connect')
            self.connection = connection

        logger.debug(f"Connecting to LDAP server {self.config.address} (TLS mode: {self.config.tls_mode.value})")
        try:
            connection.open()
        except Exception as e:
            raise self._translate(e, 'connect')
        self._raise_if_cancelled('connect')

        if self.config.tls_mode is TLSMode.START_TLS:
            self._start_tls(connection)

        logger.debug(f"Connection to {self.config.address} established")

    def _start_tls(self, connection) -> None:
        self._apply_deadline('StartTLS')
        try:
            started = connection.start_tls()
        except LDAPStartTLSError as e:
            raise LDAPConnectionError(ConnectionFailure.HANDSHAKE_FAILED, f"StartTLS failed: {e}", e)
        except Exception as e:
            raise self._translate(e, 'StartTLS')
        self._raise_if_cancelled('StartTLS')
        if not started:
            raise LDAPConnectionError(ConnectionFailure.HANDSHAKE_FAILED,
                                      f"StartTLS refused: {connection.result}")
        logger.debug("StartTLS negotiation successful")

    def _create_tls_config(self) -> Optional[Tls]:
        """
        Create TLS configuration for the connection.

        Returns:
            Tls configuration object or None for a plain connection
        """
        if not self.config.tls_active:
            return None

        if self.config.skip_tls_verification:
            return Tls(validate=ssl.CERT_NONE)

        # No CA bundle means the system trust store
        return Tls(
            validate=ssl.CERT_REQUIRED,
            ca_certs_data=self.config.ca_bundle_pem(),
            sni=self.config.server_address,
        )

    def bind(self, dn: str, password: str) -> bool:
        """
        Bind the connection as dn, or anonymously when both values are empty.

        Returns:
            True if the directory accepted the credentials

        Raises:
            LDAPConnectionError: If the transport fails or times out
        """
        connection = self._require_connection('bind')
        self._apply_deadline('bind')

        if dn or password:
            connection.authentication = SIMPLE
            connection.user = dn
            connection.password = password
        else:
            connection.authentication = ANONYMOUS
            connection.user = None
            connection.password = None

        try:
            bound = connection.bind()
        except _TRANSPORT_ERRORS as e:
            raise self._translate(e, 'bind')
        except LDAPException as e:
            logger.debug(f"Bind rejected: {e}")
            bound = False
        except Exception as e:
            raise self._translate(e, 'bind')
        self._raise_if_cancelled('bind')

        if not bound:
            logger.debug(f"Bind rejected: {connection.result}")
        return bool(bound)

    def search(self, request) -> List[DirectoryEntry]:
        """
        Run a search and return its entries in response order.

        Raises:
            LDAPConnectionError: If the transport fails or a time limit is hit
            DirectoryError: If the directory reports an error or a malformed entry
        """
        connection = self._require_connection('search')
        self._apply_deadline('search')

        logger.debug(f"Searching with filter: {request.filter} in base: {request.base_dn}")
        try:
            connection.search(
                search_base=request.base_dn,
                search_filter=request.filter,
                search_scope=request.scope,
                dereference_aliases=DEREF_NEVER,
                attributes=list(request.attributes),
                size_limit=request.size_limit,
                time_limit=request.time_limit,
            )
        except _TRANSPORT_ERRORS as e:
            raise self._translate(e, 'search')
        except LDAPException as e:
            self._raise_if_cancelled('search')
            raise DirectoryError(f"Search failed: {e}")
        except Exception as e:
            raise self._translate(e, 'search')
        self._raise_if_cancelled('search')

        result = connection.result or {}
        code = result.get('result')
        if code == RESULT_TIME_LIMIT_EXCEEDED:
            raise LDAPConnectionError(ConnectionFailure.TIMEOUT,
                                      f"search time limit of {request.time_limit}s exceeded")
        if code not in (RESULT_SUCCESS, RESULT_SIZE_LIMIT_EXCEEDED):
            raise DirectoryError(f"Search failed: {result.get('description')} {result.get('message', '')}".rstrip())

        entries = []
        for item in connection.response or []:
            if item.get('type') != 'searchResEntry':
                continue
            dn = item.get('dn')
            if not dn:
                raise DirectoryError("Search returned an entry without a distinguished name")
            entries.append(DirectoryEntry.from_response(dn, item.get('attributes') or {}))

        logger.debug(f"Search returned {len(entries)} entries")
        return entries

    def cancel(self) -> None:
        """
        Abandon the attempt and release the connection.

        ldap3 holds its connection lock for the whole of a blocking receive,
        so the socket is shut down first to wake the operation in flight
        before unbinding.
        """
        self._cancelled = True
        connection = self.connection
        sock = getattr(connection, 'socket', None) if connection is not None else None
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError as e:
                logger.debug(f"Socket shutdown on cancel: {e}")
        self.close()

    def close(self) -> None:
        """Close the connection; only the first call has any effect."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            connection, self.connection = self.connection, None

        if connection is None:
            return
        try:
            connection.unbind()
            logger.debug("LDAP connection closed")
        except (LDAPException, OSError) as e:
            logger.warning(f"Error closing LDAP connection: {e}")

    def _require_connection(self, operation: str):
        connection = self.connection
        if connection is None:
            if self._closed:
                raise self._cancelled_error(operation)
            raise DirectoryError(f"Cannot {operation}: channel is not open")
        return connection

    def _apply_deadline(self, operation: str) -> None:
        remaining = self.deadline.check(operation)
        if remaining is None or self.connection is None:
            return
        self.connection.receive_timeout = _receive_timeout(remaining)
        sock = getattr(self.connection, 'socket', None)
        if sock is not None:
            sock.settimeout(remaining)

    def _raise_if_cancelled(self, operation: str) -> None:
        if self._cancelled:
            raise self._cancelled_error(operation)

    def _cancelled_error(self, operation: str) -> LDAPConnectionError:
        if self._cancelled:
            return LDAPConnectionError(ConnectionFailure.CANCELLED, f"attempt cancelled during {operation}")
        return LDAPConnectionError(ConnectionFailure.DIAL_FAILED, f"connection closed before {operation}")

    def _translate(self, error: BaseException, operation: str) -> LDAPConnectionError:
        """Map an ldap3 or socket failure to a connection error kind."""
        if self._cancelled:
            return LDAPConnectionError(ConnectionFailure.CANCELLED,
                                       f"attempt cancelled during {operation}", error)

        # ldap3 re-raises socket errors as classes derived from both its own
        # exception and the original type, so isinstance sees the socket error
        errors = _linked_errors(error)
        if any(isinstance(e, _TIMEOUT_ERRORS) for e in errors) or self.deadline.expired():
            kind = ConnectionFailure.TIMEOUT
        elif any(isinstance(e, _HANDSHAKE_ERRORS) for e in errors):
            kind = ConnectionFailure.HANDSHAKE_FAILED
        else:
            kind = ConnectionFailure.DIAL_FAILED

        if isinstance(error, LDAPSocketOpenError) and kind is ConnectionFailure.DIAL_FAILED:
            detail = f"cannot connect to {self.config.address}: {error}"
        else:
            detail = f"{operation} failed: {error}"
        logger.warning(f"LDAP {operation} on {self.config.address} failed ({kind.value}): {error}")
        return LDAPConnectionError(kind, detail, error)

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
