'''
Main entry point for the Entitlement Backend. This runs the necessary setup code like loading the
configuration, the Apple root certificates and the logging handlers before handing over control-flow
to Flask.

This application runs directly as a flask app (in a dev environment) and it also can be served over
UWSGI for a production use-case, see config.py for how options are specified.
'''

import flask
import logging
import logging.handlers
import pathlib
import sys

import base
import backend
import config
import platform_apple
import server

log                                                       = config.log
webhook_loggers: list[base.AsyncSessionWebhookLogHandler] = []

def entry_point() -> flask.Flask:
    log_formatter  = base.LogFormatter('%(asctime)s %(levelname)s %(name)s %(message)s')
    console_logger = logging.StreamHandler()
    console_logger.setFormatter(log_formatter)
    loggers: list[logging.Logger] = [log, backend.log, platform_apple.log]
    for it in loggers:
        it.setLevel(logging.INFO)
        it.addHandler(console_logger)

    err                           = base.ErrorSink()
    parsed_args: config.ParsedArgs = config.parse_args(err)
    base.UNSAFE_LOGGING            = parsed_args.unsafe_logging
    if err.has():
        log.error('Failed to startup, invalid configuration options:\n  ' + err.build())
        sys.exit(1)

    file_logger = logging.handlers.RotatingFileHandler(filename=parsed_args.log_path, maxBytes=64 * 1024 * 1024, backupCount=2, encoding='utf-8')
    file_logger.setFormatter(log_formatter)
    for it in loggers:
        it.addHandler(file_logger)

    for it in parsed_args.session_webhooks:
        if it.enabled:
            webhook_logger = base.AsyncSessionWebhookLogHandler(webhook_url=it.url, display_name=it.name)
            webhook_logger.setLevel(logging.WARNING)
            webhook_logger.setFormatter(log_formatter)
            webhook_loggers.append(webhook_logger)
            for logger in loggers:
                logger.addHandler(webhook_logger)

    # NOTE: Verification cannot proceed without the full trust set, refuse to start without it
    root_certs: list[bytes] = platform_apple.load_root_certificates(pathlib.Path(parsed_args.apple_root_cert_dir), err)
    if err.has():
        log.error('Failed to startup, unable to load Apple root certificates:\n  ' + err.build())
        sys.exit(1)

    core: platform_apple.Core = platform_apple.init(credentials      = parsed_args.apple_credentials,
                                                    root_certs       = root_certs,
                                                    remote_timeout_s = parsed_args.remote_timeout_s)

    startup_log  = '\n'
    startup_log += 'Entitlement Backend\n'
    startup_log += '  Features:\n'
    if len(parsed_args.ini_path) > 0:
        startup_log += f'    Config .INI file loaded: {parsed_args.ini_path}\n'
    startup_log += f'    Logging to: {parsed_args.log_path}\n'
    if parsed_args.unsafe_logging:
        startup_log += '    Unsafe logging enabled (this must NOT be used in production)\n'
    startup_log += f'    Platform: Apple App Store (bundle {parsed_args.apple_bundle_id}, app {parsed_args.apple_app_apple_id}), production with sandbox fallback\n'
    startup_log += f'    Root certificates: {len(root_certs)} loaded from {parsed_args.apple_root_cert_dir}\n'
    startup_log += f'    Remote call timeout: {base.format_seconds(parsed_args.remote_timeout_s)}\n'
    for it in parsed_args.session_webhooks:
        if it.enabled:
            startup_log += f'    Webhook Logger: Enabled (display name: {it.name})\n'

    log.info(startup_log)
    for it in webhook_loggers:
        it.emit_text(f'Starting up instance: {startup_log}')

    result: flask.Flask = server.init(testing_mode=False, core=core)
    result.logger.addHandler(console_logger)
    result.logger.addHandler(file_logger)
    for it in webhook_loggers:
        result.logger.addHandler(it)

    # The flask runner/UWSGI takes over from here and runs the application for us across multiple
    # processes if necessary.
    return result

# Flask entry point
flask_app: flask.Flask = entry_point()
