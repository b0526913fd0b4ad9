'''
Start-up configuration for the Entitlement Backend.

Options can be given in an .INI file pointed to by ENTITLEMENT_BACKEND_INI_PATH and/or as
environment variables, environment variables override the .INI. The backend is designed to be
mounted by UWSGI which provides no way to forward command line arguments to the application hence
the use of environment variables over argparse.

Example .INI:

    [base]
    log_path         = /var/log/entitlement-backend.log
    remote_timeout_s = 15

    [session_webhook.0]
    enabled = true
    url     = https://example.org/hooks/abcdef
    name    = Entitlement Backend

    [apple]
    key_id        = ABCDEF1234
    issuer_id     = 00000000-0000-0000-0000-000000000000
    bundle_id     = com.example.app
    key_path      = /app/Secrets/SubscriptionKey_ABCDEF1234.p8
    app_apple_id  = 1234567890
    root_cert_dir = /app/Resources
'''

import configparser
import dataclasses
import logging
import os
import pathlib
import sys

import cryptography.exceptions
import cryptography.hazmat.primitives.serialization

import base
import platform_apple

log = logging.Logger('ENTITLEMENT')

ENV_PREFIX = 'ENTITLEMENT_BACKEND_'

@dataclasses.dataclass
class SessionWebhook:
    enabled: bool = False
    url:     str  = ''
    name:    str  = ''

@dataclasses.dataclass
class ParsedArgs:
    ini_path:            str                        = ''
    log_path:            str                        = ''
    unsafe_logging:      bool                       = False
    remote_timeout_s:    float                      = platform_apple.DEFAULT_REMOTE_TIMEOUT_S

    session_webhooks:    list[SessionWebhook]       = dataclasses.field(default_factory=list)

    apple_key_id:        str                        = ''
    apple_issuer_id:     str                        = ''
    apple_bundle_id:     str                        = ''
    apple_key_path:      str                        = ''
    apple_private_key:   str                        = ''
    apple_app_apple_id:  int | None                 = None
    apple_root_cert_dir: str                        = platform_apple.DEFAULT_ROOT_CERT_DIR

    # Populated after validation
    apple_credentials:   platform_apple.Credentials = dataclasses.field(default_factory=platform_apple.Credentials)

def parse_int(label: str, value: str, err: base.ErrorSink) -> int | None:
    result: int | None = None
    try:
        result = int(value)
    except ValueError:
        err.fail(base.ErrorKind.ConfigurationMissing, 500, f'{label} must be an integer, received "{value}"')
    return result

def parse_float(label: str, value: str, err: base.ErrorSink) -> float | None:
    result: float | None = None
    try:
        result = float(value)
    except ValueError:
        err.fail(base.ErrorKind.ConfigurationMissing, 500, f'{label} must be a number, received "{value}"')
    return result

def parse_args(err: base.ErrorSink) -> ParsedArgs:
    # NOTE: Parse .INI file if present and get arguments for it
    result          = ParsedArgs()
    result.ini_path = os.getenv(f'{ENV_PREFIX}INI_PATH', '')
    if len(result.ini_path) > 0:
        if not pathlib.Path(result.ini_path).exists():
            log.error(f'.INI config file "{result.ini_path}", was specified but does not exist/is not readable')
            sys.exit(1)

        ini_parser = configparser.ConfigParser()
        _          = ini_parser.read(filenames=result.ini_path)

        if 'base' in ini_parser:
            base_section: configparser.SectionProxy = ini_parser['base']
            result.log_path                         = base_section.get(option='log_path',              fallback='')
            result.unsafe_logging                   = base_section.getboolean(option='unsafe_logging', fallback=False)
            timeout_s: float | None                 = parse_float('remote_timeout_s', base_section.get(option='remote_timeout_s', fallback=str(result.remote_timeout_s)), err)
            if timeout_s is not None:
                result.remote_timeout_s = timeout_s

        webhook_index = 0
        while True:
            webhook_label: str = f'session_webhook.{webhook_index}'
            if not ini_parser.has_section(webhook_label):
                break

            webhook_section: configparser.SectionProxy = ini_parser[webhook_label]
            webhook_enabled: bool | None               = webhook_section.getboolean('enabled')
            webhook_url:     str | None                = webhook_section.get('url')
            webhook_name:    str | None                = webhook_section.get('name')

            if webhook_name is None:
                log.error(f"Failed to parse webhook section {webhook_label}, missing 'name'")
                sys.exit(1)

            if webhook_url is None:
                log.error(f"Failed to parse webhook section {webhook_label}, missing 'url'")
                sys.exit(1)

            if webhook_enabled is None:
                log.error(f"Failed to parse webhook section {webhook_label}, missing 'enabled'")
                sys.exit(1)

            webhook_index += 1
            result.session_webhooks.append(SessionWebhook(name=webhook_name, url=webhook_url, enabled=webhook_enabled))

        if 'apple' in ini_parser:
            apple_section: configparser.SectionProxy = ini_parser['apple']
            result.apple_key_id                      = apple_section.get(option='key_id',        fallback='')
            result.apple_issuer_id                   = apple_section.get(option='issuer_id',     fallback='')
            result.apple_bundle_id                   = apple_section.get(option='bundle_id',     fallback='')
            result.apple_key_path                    = apple_section.get(option='key_path',      fallback='')
            result.apple_root_cert_dir               = apple_section.get(option='root_cert_dir', fallback=result.apple_root_cert_dir)
            app_apple_id_str: str                    = apple_section.get(option='app_apple_id',  fallback='')
            if len(app_apple_id_str):
                result.apple_app_apple_id = parse_int('app_apple_id', app_apple_id_str, err)

    # NOTE: Get arguments from environment, they override .INI values if specified
    result.log_path            = os.getenv(f'{ENV_PREFIX}LOG_PATH',             result.log_path)
    result.unsafe_logging      = base.os_get_boolean_env(f'{ENV_PREFIX}UNSAFE_LOGGING', result.unsafe_logging)
    result.apple_key_id        = os.getenv(f'{ENV_PREFIX}APPLE_KEY_ID',         result.apple_key_id)
    result.apple_issuer_id     = os.getenv(f'{ENV_PREFIX}APPLE_ISSUER_ID',      result.apple_issuer_id)
    result.apple_bundle_id     = os.getenv(f'{ENV_PREFIX}APPLE_BUNDLE_ID',      result.apple_bundle_id)
    result.apple_key_path      = os.getenv(f'{ENV_PREFIX}APPLE_KEY_PATH',       result.apple_key_path)
    result.apple_root_cert_dir = os.getenv(f'{ENV_PREFIX}APPLE_ROOT_CERT_DIR',  result.apple_root_cert_dir)

    # NOTE: Secret managers usually hand the .p8 over as a single line with the newlines escaped
    result.apple_private_key   = os.getenv(f'{ENV_PREFIX}APPLE_PRIVATE_KEY', '').replace('\\n', '\n')

    timeout_env = os.getenv(f'{ENV_PREFIX}REMOTE_TIMEOUT_S', '')
    if len(timeout_env):
        timeout_s = parse_float(f'{ENV_PREFIX}REMOTE_TIMEOUT_S', timeout_env, err)
        if timeout_s is not None:
            result.remote_timeout_s = timeout_s

    app_apple_id_env = os.getenv(f'{ENV_PREFIX}APPLE_APP_APPLE_ID', '')
    if len(app_apple_id_env):
        result.apple_app_apple_id = parse_int(f'{ENV_PREFIX}APPLE_APP_APPLE_ID', app_apple_id_env, err)

    # NOTE: Validate, every credential is required before we can serve a single request
    if len(result.apple_key_id) == 0:
        err.fail(base.ErrorKind.ConfigurationMissing, 500, 'Apple key_id was not specified')
    if len(result.apple_issuer_id) == 0:
        err.fail(base.ErrorKind.ConfigurationMissing, 500, 'Apple issuer_id was not specified')
    if len(result.apple_bundle_id) == 0:
        err.fail(base.ErrorKind.ConfigurationMissing, 500, 'Apple bundle_id was not specified')
    if result.apple_app_apple_id is None:
        err.fail(base.ErrorKind.ConfigurationMissing, 500, 'Apple app_apple_id was not specified')
    if len(result.apple_key_path) == 0 and len(result.apple_private_key) == 0:
        err.fail(base.ErrorKind.ConfigurationMissing, 500, f'Apple key_path or {ENV_PREFIX}APPLE_PRIVATE_KEY was not specified')
    if result.remote_timeout_s <= 0:
        err.fail(base.ErrorKind.ConfigurationMissing, 500, f'remote_timeout_s must be positive, received {result.remote_timeout_s}')

    signing_key: bytes = result.apple_private_key.encode('utf-8')
    if not err.has() and len(signing_key) == 0:
        try:
            signing_key = pathlib.Path(result.apple_key_path).read_bytes()
        except OSError as e:
            err.fail(base.ErrorKind.ConfigurationMissing, 500, f'Apple signing key can\'t be read from {result.apple_key_path}: {e}')

    # NOTE: The App Store API client loads the key in its constructor, a bad key must be reported
    # here as a configuration error
    if not err.has():
        try:
            _ = cryptography.hazmat.primitives.serialization.load_pem_private_key(signing_key, password=None)
        except (ValueError, TypeError, cryptography.exceptions.UnsupportedAlgorithm) as e:
            err.fail(base.ErrorKind.ConfigurationMissing, 500, f'Apple signing key is not an unencrypted PEM private key: {e}')

    if not err.has():
        assert result.apple_app_apple_id is not None
        result.apple_credentials = platform_apple.Credentials(signing_key  = signing_key,
                                                              key_id       = result.apple_key_id,
                                                              issuer_id    = result.apple_issuer_id,
                                                              bundle_id    = result.apple_bundle_id,
                                                              app_apple_id = result.apple_app_apple_id)

    if len(result.log_path) == 0:
        result.log_path = 'entitlement-backend.log'

    return result
