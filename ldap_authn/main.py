"""
Command-line entry point for checking the connector against a live directory.

Resolves one user and prints the identity as JSON, or prints the ``--ldap.*``
flags for a configuration so a deployment generator can pass them on.
"""

import os
import sys
import json
import getpass
import logging
import argparse
from typing import List, Optional

from ldap_authn.authenticator import AuthenticationError, LDAPAuthenticator
from ldap_authn.channel import DirectoryError, LDAPConnectionError
from ldap_authn.config import ConfigurationError, DirectoryConfig, load_config
from ldap_authn.logging_setup import setup_logging
from ldap_authn.retry import MaxRetriesExceeded, create_retry_callback, retry_call

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_DENIED = 1
EXIT_CONFIG_ERROR = 2
EXIT_CONNECTION_ERROR = 3
EXIT_DIRECTORY_ERROR = 4

PASSWORD_ENV = 'LDAP_USER_PASSWORD'


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='LDAP authentication connector')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--username', '-u', help='User to authenticate')
    parser.add_argument('--timeout', type=float, help='Overall deadline in seconds')
    parser.add_argument('--retries', type=int, help='Retries on connection errors')
    parser.add_argument('--log-level', help='Override the configured log level')
    parser.add_argument('--print-args', action='store_true',
                        help='Print the --ldap.* flags for this configuration and exit')
    parser.add_argument('--ca-cert-path',
                        help='With --print-args, CA certificate path to emit instead of the configured one')
    DirectoryConfig.add_arguments(parser)
    return parser


def load_settings(args) -> tuple:
    """
    Build the directory, logging and error handling settings.

    The config file is read first when given; ``--ldap.*`` flags override it.
    """
    if args.config:
        config = load_config(args.config)
        base = DirectoryConfig.from_mapping(config['ldap'])
        logging_config = config['logging']
        error_config = config['error_handling']
    else:
        base = None
        logging_config = {}
        error_config = {'max_retries': 0, 'retry_wait_seconds': 1, 'retry_backoff': 2.0}

    directory = DirectoryConfig.from_args(args, base=base).validate()
    if args.log_level:
        logging_config = dict(logging_config, level=args.log_level)
    if args.retries is not None:
        error_config = dict(error_config, max_retries=args.retries)
    return directory, logging_config, error_config


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)

    try:
        directory, logging_config, error_config = load_settings(args)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    setup_logging(logging_config)

    if args.print_args:
        print('\n'.join(directory.to_args(ca_cert_path=args.ca_cert_path)))
        return EXIT_OK

    if not args.username:
        print("--username is required", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    password = os.getenv(PASSWORD_ENV) or getpass.getpass(f"Password for {args.username}: ")
    authenticator = LDAPAuthenticator(directory)

    try:
        identity = retry_call(
            authenticator.authenticate,
            args=(args.username, password, args.timeout),
            max_attempts=int(error_config.get('max_retries', 0)) + 1,
            delay=float(error_config.get('retry_wait_seconds', 1)),
            backoff=float(error_config.get('retry_backoff', 1.0)),
            on_retry=create_retry_callback('LDAP authentication'),
        )
    except AuthenticationError as e:
        print(str(e), file=sys.stderr)
        return EXIT_DENIED
    except (LDAPConnectionError, MaxRetriesExceeded) as e:
        logger.error(f"LDAP connection error: {e}")
        print(f"LDAP connection error: {e}", file=sys.stderr)
        return EXIT_CONNECTION_ERROR
    except DirectoryError as e:
        logger.error(f"Directory error: {e}")
        print(f"Directory error: {e}", file=sys.stderr)
        return EXIT_DIRECTORY_ERROR

    print(json.dumps(identity.to_dict(), indent=2))
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
