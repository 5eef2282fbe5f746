#!/usr/bin/env python3
"""
Unit tests for configuration module.

This module tests directory settings defaults and validation, CA bundle
loading, the YAML loader with environment overrides, and the --ldap.* flags.
"""

import os
import sys
import argparse
import datetime
import tempfile
import unittest
from unittest.mock import patch

import attrs
import yaml
from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_authn.config import (
    ConfigLoader,
    ConfigurationError,
    DirectoryConfig,
    TLSMode,
    load_ca_certificates,
    load_config,
    load_directory_config,
)


def make_ca_pem(common_name='Test CA'):
    """Create a throwaway self-signed CA certificate in PEM form."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM)


class TempFileMixin:
    """Helpers for writing temporary files that are removed after the test."""

    def write_temp(self, content, suffix='.pem'):
        mode = 'wb' if isinstance(content, bytes) else 'w'
        with tempfile.NamedTemporaryFile(mode=mode, suffix=suffix, delete=False) as f:
            f.write(content)
        self.addCleanup(os.unlink, f.name)
        return f.name


class TestDirectoryConfigDefaults(unittest.TestCase):
    """Test cases for default values."""

    def test_documented_defaults(self):
        """Test an empty configuration carries the documented defaults."""
        config = DirectoryConfig()

        self.assertEqual(config.server_port, '389')
        self.assertEqual(config.user_search_filter, '(objectClass=person)')
        self.assertEqual(config.user_attribute, 'uid')
        self.assertEqual(config.group_search_filter, '(objectClass=groupOfNames)')
        self.assertEqual(config.group_member_attribute, 'member')
        self.assertEqual(config.group_name_attribute, 'cn')
        self.assertEqual(config.tls_mode, TLSMode.PLAIN)
        self.assertFalse(config.skip_tls_verification)
        self.assertEqual(config.trusted_ca_pool, ())
        self.assertEqual(config.search_time_limit, 10)

    def test_empty_values_fall_back_to_defaults(self):
        """Test empty strings and None are treated as unset."""
        config = DirectoryConfig(server_address='ldap.example', server_port='',
                                 user_attribute='', group_name_attribute=None)

        self.assertEqual(config.server_port, '389')
        self.assertEqual(config.user_attribute, 'uid')
        self.assertEqual(config.group_name_attribute, 'cn')

    def test_defaults_survive_validation(self):
        """Test validation keeps the defaults unchanged."""
        config = DirectoryConfig(server_address='ldap.example').validate()

        self.assertEqual(config.user_attribute, 'uid')
        self.assertEqual(config.group_member_attribute, 'member')
        self.assertEqual(config.timeout, 30.0)
        self.assertTrue(config.anonymous_bind)
        self.assertEqual(config.address, 'ldap.example:389')

    def test_config_is_immutable(self):
        """Test settings cannot be changed after construction."""
        config = DirectoryConfig(server_address='ldap.example')

        with self.assertRaises(attrs.exceptions.FrozenInstanceError):
            config.server_address = 'evil.example'

    def test_password_not_in_repr(self):
        """Test the bind password is hidden from repr."""
        config = DirectoryConfig(server_address='ldap.example', bind_dn='cn=svc', bind_password='hunter2')

        self.assertNotIn('hunter2', repr(config))


class TestDirectoryConfigValidation(TempFileMixin, unittest.TestCase):
    """Test cases for validate()."""

    def assertInvalid(self, fragment, **settings):
        with self.assertRaises(ConfigurationError) as ctx:
            DirectoryConfig(**settings).validate()
        self.assertIn(fragment, str(ctx.exception))

    def test_missing_server_address(self):
        self.assertInvalid('server_address')

    def test_bad_port(self):
        self.assertInvalid('server_port', server_address='ldap.example', server_port='ldaps')
        self.assertInvalid('server_port', server_address='ldap.example', server_port='70000')

    def test_unbalanced_filters(self):
        """Test malformed base filters are rejected."""
        self.assertInvalid('user_search_filter', server_address='ldap.example',
                           user_search_filter='(objectClass=person')
        self.assertInvalid('group_search_filter', server_address='ldap.example',
                           group_search_filter='(objectClass=groupOfNames))')
        self.assertInvalid('user_search_filter', server_address='ldap.example',
                           user_search_filter='objectClass=person')

    def test_bind_dn_without_password(self):
        """Test a bind DN needs a password."""
        self.assertInvalid('bind_password', server_address='ldap.example', bind_dn='cn=svc')

    def test_all_errors_reported_together(self):
        """Test every problem appears in one error."""
        with self.assertRaises(ConfigurationError) as ctx:
            DirectoryConfig(user_search_filter='(', timeout=-1).validate()

        message = str(ctx.exception)
        self.assertIn('server_address', message)
        self.assertIn('user_search_filter', message)
        self.assertIn('timeout', message)

    def test_ca_file_is_loaded_for_tls(self):
        """Test a CA file populates the trust pool when TLS is verified."""
        ca_file = self.write_temp(make_ca_pem())
        config = DirectoryConfig(server_address='ldap.example', tls_mode='ldaps', ca_cert_file=ca_file)

        validated = config.validate()

        self.assertEqual(len(validated.trusted_ca_pool), 1)
        self.assertEqual(config.trusted_ca_pool, ())
        self.assertIn('BEGIN CERTIFICATE', validated.ca_bundle_pem())

    def test_ca_bundle_with_several_certificates(self):
        ca_file = self.write_temp(make_ca_pem('Root A') + make_ca_pem('Root B'))

        certificates = load_ca_certificates(ca_file)

        self.assertEqual(len(certificates), 2)

    def test_unreadable_ca_file(self):
        """Test a missing CA file is a configuration error."""
        self.assertInvalid('Cannot read CA certificate file', server_address='ldap.example',
                           tls_mode=TLSMode.START_TLS, ca_cert_file='/nonexistent/ca.pem')

    def test_unparseable_ca_file(self):
        """Test a CA file without certificates is a configuration error."""
        ca_file = self.write_temp('not a certificate\n')

        with self.assertRaises(ConfigurationError):
            DirectoryConfig(server_address='ldap.example', tls_mode=TLSMode.START_TLS,
                            ca_cert_file=ca_file).validate()

    def test_ca_file_ignored_without_verification(self):
        """Test the CA file is not read when verification is skipped or TLS is off."""
        for settings in ({'tls_mode': TLSMode.IMPLICIT_TLS, 'skip_tls_verification': True},
                         {'tls_mode': TLSMode.PLAIN}):
            config = DirectoryConfig(server_address='ldap.example', ca_cert_file='/nonexistent/ca.pem',
                                     **settings).validate()
            self.assertEqual(config.trusted_ca_pool, ())
            self.assertIsNone(config.ca_bundle_pem())


class TestTLSMode(unittest.TestCase):
    """Test cases for TLS mode parsing."""

    def test_aliases(self):
        self.assertEqual(TLSMode.parse('StartTLS'), TLSMode.START_TLS)
        self.assertEqual(TLSMode.parse('start-tls'), TLSMode.START_TLS)
        self.assertEqual(TLSMode.parse('ldaps'), TLSMode.IMPLICIT_TLS)
        self.assertEqual(TLSMode.parse(''), TLSMode.PLAIN)
        self.assertEqual(TLSMode.parse(TLSMode.IMPLICIT_TLS), TLSMode.IMPLICIT_TLS)

    def test_unknown_mode(self):
        with self.assertRaises(ConfigurationError):
            TLSMode.parse('ssl3')

    def test_legacy_booleans(self):
        """Test the is_secure_ldap/start_tls switches select a mode."""
        self.assertEqual(DirectoryConfig.from_mapping({'is_secure_ldap': True}).tls_mode, TLSMode.IMPLICIT_TLS)
        self.assertEqual(DirectoryConfig.from_mapping({'start_tls': True}).tls_mode, TLSMode.START_TLS)
        self.assertEqual(DirectoryConfig.from_mapping({}).tls_mode, TLSMode.PLAIN)

    def test_conflicting_postures(self):
        """Test contradictory TLS settings are rejected."""
        with self.assertRaises(ConfigurationError):
            DirectoryConfig.from_mapping({'is_secure_ldap': True, 'start_tls': True})
        with self.assertRaises(ConfigurationError):
            DirectoryConfig.from_mapping({'tls_mode': 'plain', 'start_tls': True})


class TestConfigLoader(TempFileMixin, unittest.TestCase):
    """Test cases for ConfigLoader class."""

    def setUp(self):
        """Set up test fixtures."""
        self.valid_config = {
            'ldap': {
                'server_address': 'ldap.example.com',
                'server_port': 636,
                'bind_dn': 'cn=service,dc=example,dc=com',
                'bind_password': 'password',
                'user_search_base': 'ou=people,dc=example,dc=com',
                'group_search_base': 'ou=groups,dc=example,dc=com',
                'tls_mode': 'ldaps',
                'skip_tls_verification': True,
            },
            'logging': {
                'level': 'DEBUG',
            },
        }

    def test_load_valid_config(self):
        """Test loading a valid configuration applies defaults."""
        path = self.write_temp(yaml.dump(self.valid_config), suffix='.yaml')

        config = load_config(path)

        self.assertEqual(config['ldap']['server_address'], 'ldap.example.com')
        self.assertEqual(config['logging']['level'], 'DEBUG')
        self.assertEqual(config['logging']['rotation'], 'daily')
        self.assertEqual(config['error_handling']['max_retries'], 0)

    def test_load_directory_config(self):
        """Test the ldap section becomes a validated DirectoryConfig."""
        path = self.write_temp(yaml.dump(self.valid_config), suffix='.yaml')

        directory = load_directory_config(path)

        self.assertEqual(directory.server_port, '636')
        self.assertEqual(directory.tls_mode, TLSMode.IMPLICIT_TLS)
        self.assertEqual(directory.user_attribute, 'uid')

    def test_env_override_for_bind_password(self):
        """Test LDAP_BIND_PASSWORD replaces the file value."""
        path = self.write_temp(yaml.dump(self.valid_config), suffix='.yaml')

        with patch.dict(os.environ, {'LDAP_BIND_PASSWORD': 'from-env'}):
            config = ConfigLoader(path).load()

        self.assertEqual(config['ldap']['bind_password'], 'from-env')

    def test_missing_file(self):
        with self.assertRaises(ConfigurationError) as ctx:
            load_config('/nonexistent/config.yaml')
        self.assertIn('not found', str(ctx.exception))

    def test_invalid_yaml(self):
        path = self.write_temp('ldap: [unclosed\n', suffix='.yaml')

        with self.assertRaises(ConfigurationError):
            load_config(path)

    def test_missing_ldap_section(self):
        path = self.write_temp(yaml.dump({'logging': {'level': 'INFO'}}), suffix='.yaml')

        with self.assertRaises(ConfigurationError):
            load_config(path)

    def test_config_path_from_environment(self):
        path = self.write_temp(yaml.dump(self.valid_config), suffix='.yaml')

        with patch.dict(os.environ, {'CONFIG_PATH': path}):
            loader = ConfigLoader()

        self.assertEqual(loader.config_path, path)


class TestFlags(unittest.TestCase):
    """Test cases for the --ldap.* flag surface."""

    def setUp(self):
        self.parser = argparse.ArgumentParser()
        DirectoryConfig.add_arguments(self.parser)

    def test_flags_round_trip(self):
        """Test to_args output parses back into the same configuration."""
        config = DirectoryConfig(
            server_address='ldap.example.com',
            server_port='636',
            bind_dn='cn=service,dc=example,dc=com',
            bind_password='password',
            user_search_base='ou=people,dc=example,dc=com',
            user_attribute='sAMAccountName',
            group_search_base='ou=groups,dc=example,dc=com',
            tls_mode=TLSMode.START_TLS,
            skip_tls_verification=True,
        )

        args = self.parser.parse_args(config.to_args())

        self.assertEqual(DirectoryConfig.from_args(args), config)

    def test_to_args_emits_only_set_values(self):
        args = DirectoryConfig(server_address='ldap.example.com').to_args()

        self.assertIn('--ldap.server-address=ldap.example.com', args)
        self.assertIn('--ldap.server-port=389', args)
        self.assertIn('--ldap.user-attribute=uid', args)
        self.assertFalse(any(arg.startswith('--ldap.bind-dn') for arg in args))
        self.assertNotIn('--ldap.start-tls', args)

    def test_to_args_rewrites_ca_path(self):
        config = DirectoryConfig(server_address='ldap.example.com', ca_cert_file='/home/me/ca.crt',
                                 tls_mode=TLSMode.IMPLICIT_TLS)

        args = config.to_args(ca_cert_path='/etc/guard/certs/ca.crt')

        self.assertIn('--ldap.ca-cert-file=/etc/guard/certs/ca.crt', args)
        self.assertIn('--ldap.is-secure-ldap', args)

    def test_flags_override_base(self):
        """Test unset flags keep the base configuration values."""
        base = DirectoryConfig(server_address='ldap.example.com', user_attribute='mail')
        args = self.parser.parse_args(['--ldap.server-port=1389', '--ldap.tls-mode=starttls'])

        config = DirectoryConfig.from_args(args, base=base)

        self.assertEqual(config.server_address, 'ldap.example.com')
        self.assertEqual(config.user_attribute, 'mail')
        self.assertEqual(config.server_port, '1389')
        self.assertEqual(config.tls_mode, TLSMode.START_TLS)


if __name__ == '__main__':
    unittest.main()
