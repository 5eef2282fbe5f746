"""
Configuration loading and validation for the LDAP authentication connector.

This module defines the immutable DirectoryConfig used by every authentication
attempt, the TLS posture it selects, and the loaders that build it from YAML
files, environment variables and ``--ldap.*`` command-line flags.
"""

import os
import logging
from enum import Enum
from typing import Dict, Any, List, Optional, Tuple

import attrs
import yaml
from cryptography import x509
from cryptography.hazmat.primitives import serialization

from ldap_authn.filters import is_well_formed_filter

logger = logging.getLogger(__name__)


DEFAULT_SERVER_PORT = '389'
DEFAULT_USER_SEARCH_FILTER = '(objectClass=person)'
DEFAULT_USER_ATTRIBUTE = 'uid'
DEFAULT_GROUP_SEARCH_FILTER = '(objectClass=groupOfNames)'
DEFAULT_GROUP_MEMBER_ATTRIBUTE = 'member'
DEFAULT_GROUP_NAME_ATTRIBUTE = 'cn'
DEFAULT_SEARCH_TIME_LIMIT = 10
DEFAULT_TIMEOUT = 30.0


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class TLSMode(Enum):
    """Transport security posture used to reach the directory."""

    PLAIN = 'plain'
    START_TLS = 'starttls'
    IMPLICIT_TLS = 'ldaps'

    @classmethod
    def parse(cls, value) -> 'TLSMode':
        if isinstance(value, cls):
            return value
        if value is None or value == '':
            return cls.PLAIN
        normalized = str(value).strip().lower().replace('-', '_')
        aliases = {
            'plain': cls.PLAIN,
            'none': cls.PLAIN,
            'ldap': cls.PLAIN,
            'starttls': cls.START_TLS,
            'start_tls': cls.START_TLS,
            'ldaps': cls.IMPLICIT_TLS,
            'tls': cls.IMPLICIT_TLS,
            'implicit_tls': cls.IMPLICIT_TLS,
        }
        if normalized not in aliases:
            raise ConfigurationError(f"Unknown TLS mode: {value!r}")
        return aliases[normalized]


def _or_default(default):
    def convert(value):
        if value is None or value == '':
            return default
        return value
    return convert


def _port(value) -> str:
    if value is None or value == '':
        return DEFAULT_SERVER_PORT
    return str(value)


def _text(value) -> str:
    return '' if value is None else str(value)


@attrs.define(frozen=True, slots=True)
class DirectoryConfig:
    """
    Settings describing how to reach and query the directory.

    Instances are immutable and may be shared by any number of concurrent
    authentication attempts. Call validate() once at startup; it returns a
    copy with the trusted CA pool populated.
    """

    server_address: str = attrs.field(default='', converter=_text)
    server_port: str = attrs.field(default=DEFAULT_SERVER_PORT, converter=_port)
    bind_dn: str = attrs.field(default='', converter=_text)
    bind_password: str = attrs.field(default='', converter=_text, repr=False)
    user_search_base: str = attrs.field(default='', converter=_text)
    user_search_filter: str = attrs.field(
        default=DEFAULT_USER_SEARCH_FILTER, converter=_or_default(DEFAULT_USER_SEARCH_FILTER))
    user_attribute: str = attrs.field(
        default=DEFAULT_USER_ATTRIBUTE, converter=_or_default(DEFAULT_USER_ATTRIBUTE))
    group_search_base: str = attrs.field(default='', converter=_text)
    group_search_filter: str = attrs.field(
        default=DEFAULT_GROUP_SEARCH_FILTER, converter=_or_default(DEFAULT_GROUP_SEARCH_FILTER))
    group_member_attribute: str = attrs.field(
        default=DEFAULT_GROUP_MEMBER_ATTRIBUTE, converter=_or_default(DEFAULT_GROUP_MEMBER_ATTRIBUTE))
    group_name_attribute: str = attrs.field(
        default=DEFAULT_GROUP_NAME_ATTRIBUTE, converter=_or_default(DEFAULT_GROUP_NAME_ATTRIBUTE))
    tls_mode: TLSMode = attrs.field(default=TLSMode.PLAIN, converter=TLSMode.parse)
    skip_tls_verification: bool = attrs.field(default=False, converter=bool)
    ca_cert_file: Optional[str] = attrs.field(default=None, converter=_or_default(None))
    trusted_ca_pool: Tuple[x509.Certificate, ...] = attrs.field(
        default=(), converter=tuple, repr=False)
    search_time_limit: int = attrs.field(
        default=DEFAULT_SEARCH_TIME_LIMIT, converter=_or_default(DEFAULT_SEARCH_TIME_LIMIT))
    timeout: float = attrs.field(default=DEFAULT_TIMEOUT, converter=_or_default(DEFAULT_TIMEOUT))

    @property
    def tls_active(self) -> bool:
        return self.tls_mode is not TLSMode.PLAIN

    @property
    def anonymous_bind(self) -> bool:
        return not self.bind_dn and not self.bind_password

    @property
    def address(self) -> str:
        return f"{self.server_address}:{self.server_port}"

    def validate(self) -> 'DirectoryConfig':
        """
        Validate settings and load the CA bundle.

        Returns:
            A copy of this configuration with trusted_ca_pool populated

        Raises:
            ConfigurationError: Listing every problem that was found
        """
        errors = []

        if not self.server_address:
            errors.append("Missing required LDAP field: server_address")

        try:
            port = int(self.server_port)
            if not 0 < port < 65536:
                errors.append(f"server_port out of range: {self.server_port}")
        except ValueError:
            errors.append(f"server_port is not a number: {self.server_port}")

        if bool(self.bind_dn) != bool(self.bind_password):
            errors.append("bind_dn and bind_password must both be set, or both be empty for anonymous bind")

        for field in ('user_search_filter', 'group_search_filter'):
            value = getattr(self, field)
            if not is_well_formed_filter(value):
                errors.append(f"{field} is not a well-formed LDAP filter: {value}")

        try:
            if float(self.timeout) <= 0:
                errors.append(f"timeout must be positive: {self.timeout}")
        except (TypeError, ValueError):
            errors.append(f"timeout is not a number: {self.timeout}")

        try:
            if int(self.search_time_limit) < 0:
                errors.append(f"search_time_limit must not be negative: {self.search_time_limit}")
        except (TypeError, ValueError):
            errors.append(f"search_time_limit is not a number: {self.search_time_limit}")

        trusted = self.trusted_ca_pool
        if self.tls_active and not self.skip_tls_verification and self.ca_cert_file:
            try:
                trusted = load_ca_certificates(self.ca_cert_file)
            except ConfigurationError as e:
                errors.append(str(e))

        if self.tls_active and self.skip_tls_verification:
            logger.warning("LDAP server certificate verification is disabled")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

        return attrs.evolve(
            self,
            trusted_ca_pool=trusted,
            search_time_limit=int(self.search_time_limit),
            timeout=float(self.timeout),
        )

    def ca_bundle_pem(self) -> Optional[str]:
        """Return the trusted CA pool as a PEM bundle, or None to use the system store."""
        if not self.trusted_ca_pool:
            return None
        return ''.join(
            cert.public_bytes(serialization.Encoding.PEM).decode('ascii')
            for cert in self.trusted_ca_pool
        )

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> 'DirectoryConfig':
        """
        Build a configuration from the ``ldap`` section of a config file.

        Accepts either ``tls_mode`` or the ``is_secure_ldap``/``start_tls``
        booleans; contradictory postures are rejected.
        """
        data = dict(data or {})
        secure = bool(data.pop('is_secure_ldap', False))
        start_tls = bool(data.pop('start_tls', False))
        data['tls_mode'] = _resolve_tls_mode(data.get('tls_mode'), secure, start_tls)

        known = set(attrs.fields_dict(cls)) - {'trusted_ca_pool'}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning(f"Ignoring unknown LDAP settings: {', '.join(unknown)}")
        return cls(**{key: value for key, value in data.items() if key in known})

    @staticmethod
    def add_arguments(parser) -> None:
        """Register the ``--ldap.*`` flags on an argparse parser."""
        for flag, field, help_text in _FLAGS:
            parser.add_argument(flag, dest=f"ldap_{field}", default=None, help=help_text)
        parser.add_argument('--ldap.tls-mode', dest='ldap_tls_mode', default=None,
                            choices=[mode.value for mode in TLSMode],
                            help="Transport security posture")
        parser.add_argument('--ldap.skip-tls-verification', dest='ldap_skip_tls_verification',
                            action='store_true', default=None,
                            help="Skip LDAP server TLS verification, default : false")
        parser.add_argument('--ldap.is-secure-ldap', dest='ldap_is_secure_ldap',
                            action='store_true', default=None, help="Secure LDAP (LDAPS)")
        parser.add_argument('--ldap.start-tls', dest='ldap_start_tls',
                            action='store_true', default=None, help="Start tls connection")

    @classmethod
    def from_args(cls, namespace, base: Optional['DirectoryConfig'] = None) -> 'DirectoryConfig':
        """
        Build a configuration from parsed ``--ldap.*`` flags.

        Flags that were not given keep the value from ``base``.
        """
        base = base or cls()
        changes = {}
        for _, field, _ in _FLAGS:
            value = getattr(namespace, f"ldap_{field}", None)
            if value is not None:
                changes[field] = value

        skip = getattr(namespace, 'ldap_skip_tls_verification', None)
        if skip is not None:
            changes['skip_tls_verification'] = skip

        tls_mode = getattr(namespace, 'ldap_tls_mode', None)
        secure = bool(getattr(namespace, 'ldap_is_secure_ldap', None))
        start_tls = bool(getattr(namespace, 'ldap_start_tls', None))
        if tls_mode is not None or secure or start_tls:
            changes['tls_mode'] = _resolve_tls_mode(tls_mode, secure, start_tls)

        return attrs.evolve(base, **changes)

    def to_args(self, ca_cert_path: Optional[str] = None) -> List[str]:
        """
        Serialize this configuration as ``--ldap.*`` flags.

        Args:
            ca_cert_path: Path to emit instead of ca_cert_file, e.g. where the
                CA bundle is mounted inside a container

        Returns:
            Flags for every non-empty setting
        """
        args = []
        for flag, field, _ in _FLAGS:
            value = getattr(self, field)
            if field == 'ca_cert_file' and value and ca_cert_path:
                value = ca_cert_path
            if value not in (None, ''):
                args.append(f"{flag}={value}")
        if self.skip_tls_verification:
            args.append('--ldap.skip-tls-verification')
        if self.tls_mode is TLSMode.IMPLICIT_TLS:
            args.append('--ldap.is-secure-ldap')
        elif self.tls_mode is TLSMode.START_TLS:
            args.append('--ldap.start-tls')
        return args


_FLAGS = [
    ('--ldap.server-address', 'server_address', "Host or IP of the LDAP server"),
    ('--ldap.server-port', 'server_port', "LDAP server port"),
    ('--ldap.bind-dn', 'bind_dn',
     "DN used to search for users and groups. Not required if the server allows anonymous search."),
    ('--ldap.bind-password', 'bind_password',
     "Password used to search for users and groups. Not required if the server allows anonymous search."),
    ('--ldap.user-search-dn', 'user_search_base', "BaseDN to start the search user"),
    ('--ldap.user-search-filter', 'user_search_filter', "Filter to apply when searching user"),
    ('--ldap.user-attribute', 'user_attribute', "Ldap username attribute"),
    ('--ldap.group-search-dn', 'group_search_base', "BaseDN to start the search group"),
    ('--ldap.group-search-filter', 'group_search_filter',
     "Filter to apply when searching the groups that user is member of"),
    ('--ldap.group-member-attribute', 'group_member_attribute', "Ldap group member attribute"),
    ('--ldap.group-name-attribute', 'group_name_attribute', "Ldap group name attribute"),
    ('--ldap.ca-cert-file', 'ca_cert_file', "CA cert file used for a self signed server certificate"),
]


def _resolve_tls_mode(tls_mode, secure: bool, start_tls: bool) -> TLSMode:
    if secure and start_tls:
        raise ConfigurationError("is_secure_ldap and start_tls are mutually exclusive")
    legacy = TLSMode.IMPLICIT_TLS if secure else TLSMode.START_TLS if start_tls else None
    if tls_mode is None or tls_mode == '':
        return legacy or TLSMode.PLAIN
    mode = TLSMode.parse(tls_mode)
    if legacy is not None and legacy is not mode:
        raise ConfigurationError(f"tls_mode {mode.value} contradicts legacy flag for {legacy.value}")
    return mode


def load_ca_certificates(path: str) -> Tuple[x509.Certificate, ...]:
    """
    Read and parse a PEM CA bundle.

    Raises:
        ConfigurationError: If the file cannot be read or holds no certificate
    """
    try:
        with open(path, 'rb') as f:
            data = f.read()
    except OSError as e:
        raise ConfigurationError(f"Cannot read CA certificate file {path}: {e}")

    try:
        certificates = x509.load_pem_x509_certificates(data)
    except ValueError as e:
        raise ConfigurationError(f"Cannot parse CA certificate file {path}: {e}")

    if not certificates:
        raise ConfigurationError(f"No certificates found in CA certificate file {path}")

    logger.debug(f"Loaded {len(certificates)} CA certificate(s) from {path}")
    return tuple(certificates)


class ConfigLoader:
    """Handles loading of the connector configuration file."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed configuration dictionary with defaults applied

        Raises:
            ConfigurationError: If config file not found or malformed
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict) or not isinstance(self.config.get('ldap'), dict):
            raise ConfigurationError(f"Missing 'ldap' section in {self.config_path}")

        self._apply_env_overrides()
        self._apply_defaults()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _apply_defaults(self):
        """Apply default values for optional sections."""
        logging_defaults = {
            'level': 'INFO',
            'log_dir': None,
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 0,
            'retry_wait_seconds': 1,
            'retry_backoff': 2.0,
        }
        error_config = self.config.setdefault('error_handling', {})
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()


def load_directory_config(config_path: Optional[str] = None) -> DirectoryConfig:
    """Load a config file and return its validated directory settings."""
    config = load_config(config_path)
    return DirectoryConfig.from_mapping(config['ldap']).validate()
