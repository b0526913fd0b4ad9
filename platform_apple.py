'''
Apple App Store integration. Everything that talks to Apple, either over the App Store Server API or
by verifying JWS payloads signed by Apple, lives in this file. The backend layer composes these
primitives into the entitlement resolution flow and never touches the Apple library directly except
for its model types.
'''

import concurrent.futures
import dataclasses
import enum
import logging
import pathlib
import typing

import cryptography.x509

from appstoreserverlibrary.models.Environment                     import Environment                     as AppleEnvironment
from appstoreserverlibrary.models.Status                          import Status                          as AppleStatus
from appstoreserverlibrary.models.StatusResponse                  import StatusResponse                  as AppleStatusResponse
from appstoreserverlibrary.models.SubscriptionGroupIdentifierItem import SubscriptionGroupIdentifierItem as AppleSubscriptionGroupIdentifierItem
from appstoreserverlibrary.models.JWSTransactionDecodedPayload    import JWSTransactionDecodedPayload    as AppleJWSTransactionDecodedPayload
from appstoreserverlibrary.models.JWSRenewalInfoDecodedPayload    import JWSRenewalInfoDecodedPayload    as AppleJWSRenewalInfoDecodedPayload

from appstoreserverlibrary.api_client import (
    AppStoreServerAPIClient as AppleAppStoreServerAPIClient,
    APIException            as AppleAPIException,
    APIError                as AppleAPIError,
)

from appstoreserverlibrary.signed_data_verifier import (
    VerificationException        as AppleVerificationException,
    SignedDataVerifier           as AppleSignedDataVerifier,
)

from appstoreserverlibrary.receipt_utility import ReceiptUtility as AppleReceiptUtility

import base

log = logging.Logger('APPLE')

# NOTE: The order matches the trust set shipped in the Docker image under /app/Resources. All four
# must be present, verification with a partial trust set is refused.
APPLE_ROOT_CERTIFICATE_FILE_NAMES: tuple[str, ...] = (
    'AppleComputerRootCertificate.cer',
    'AppleIncRootCertificate.cer',
    'AppleRootCA-G2.cer',
    'AppleRootCA-G3.cer',
)
DEFAULT_ROOT_CERT_DIR:             str              = '/app/Resources'
DEFAULT_REMOTE_TIMEOUT_S:          float            = 15.0
DEFAULT_REMOTE_MAX_WORKERS:        int              = 16

# Subscriptions we consider when resolving an entitlement. Expired and revoked subscriptions are not
# requested, if nothing matches the entitlement resolves to expired.
SUBSCRIPTION_STATUS_FILTER: list[AppleStatus] = [AppleStatus.ACTIVE, AppleStatus.BILLING_GRACE_PERIOD]

# Both environments are queried, production first, see backend.resolve_entitlement
APPLE_ENVIRONMENTS: tuple[AppleEnvironment, ...] = (AppleEnvironment.PRODUCTION, AppleEnvironment.SANDBOX)

T = typing.TypeVar('T')

@dataclasses.dataclass
class Credentials:
    signing_key:  bytes = b''
    key_id:       str   = ''
    issuer_id:    str   = ''
    bundle_id:    str   = ''
    app_apple_id: int   = 0

@dataclasses.dataclass
class Core:
    '''
    Read-only state shared by every request. The API clients and verifiers are keyed by environment
    because a resolution may hop from production to sandbox. Remote calls are dispatched onto
    `executor` so that each one can be bounded by `remote_timeout_s`.
    '''
    app_store_server_api_clients: dict[AppleEnvironment, AppleAppStoreServerAPIClient]
    signed_data_verifiers:        dict[AppleEnvironment, AppleSignedDataVerifier]
    executor:                     concurrent.futures.ThreadPoolExecutor
    remote_timeout_s:             float = DEFAULT_REMOTE_TIMEOUT_S

class QueryOutcome(enum.Enum):
    Nil                  = 0
    Success              = 1
    NotFoundInProduction = 2
    Failure              = 3
    Timeout              = 4

@dataclasses.dataclass
class SubscriptionStatusFailure:
    http_status_code: int | None           = None
    raw_api_error:    int | None           = None
    api_error:        AppleAPIError | None = None
    error_message:    str | None           = None
    caused_by:        BaseException | None = None

@dataclasses.dataclass
class SubscriptionStatusQuery:
    outcome: QueryOutcome                               = QueryOutcome.Nil
    groups:  list[AppleSubscriptionGroupIdentifierItem] = dataclasses.field(default_factory=list)
    failure: SubscriptionStatusFailure | None           = None

def load_root_certificates(cert_dir: pathlib.Path, err: base.ErrorSink) -> list[bytes]:
    result: list[bytes] = []
    for file_name in APPLE_ROOT_CERTIFICATE_FILE_NAMES:
        path = cert_dir / file_name
        if not path.is_file():
            err.fail(base.ErrorKind.CertificateMissing, 500, f'Apple root certificate is missing: {path}')
            continue

        try:
            data: bytes = path.read_bytes()
        except OSError as e:
            err.fail(base.ErrorKind.CertificateMissing, 500, f'Apple root certificate can\'t be read from {path}: {e}')
            continue

        if len(data) == 0:
            err.fail(base.ErrorKind.CertificateMissing, 500, f'Apple root certificate is empty: {path}')
            continue

        # NOTE: The verifier only parses the roots on the first verification, a corrupt root must fail
        # start-up
        try:
            _ = cryptography.x509.load_der_x509_certificate(data)
        except ValueError as e:
            err.fail(base.ErrorKind.CertificateMissing, 500, f'Apple root certificate is not a DER encoded X.509 certificate: {path}: {e}')
            continue
        result.append(data)

    if err.has():
        result = []
    return result

def init(credentials: Credentials,
         root_certs: list[bytes],
         remote_timeout_s: float = DEFAULT_REMOTE_TIMEOUT_S,
         max_workers: int = DEFAULT_REMOTE_MAX_WORKERS) -> Core:
    api_clients: dict[AppleEnvironment, AppleAppStoreServerAPIClient] = {}
    verifiers:   dict[AppleEnvironment, AppleSignedDataVerifier]      = {}
    for env in APPLE_ENVIRONMENTS:
        api_clients[env] = AppleAppStoreServerAPIClient(signing_key = credentials.signing_key,
                                                        key_id      = credentials.key_id,
                                                        issuer_id   = credentials.issuer_id,
                                                        bundle_id   = credentials.bundle_id,
                                                        environment = env)
        verifiers[env]   = AppleSignedDataVerifier(root_certificates    = root_certs,
                                                   enable_online_checks = True,
                                                   environment          = env,
                                                   bundle_id            = credentials.bundle_id,
                                                   app_apple_id         = credentials.app_apple_id)

    executor = concurrent.futures.ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='apple-remote')
    result   = Core(app_store_server_api_clients = api_clients,
                    signed_data_verifiers        = verifiers,
                    executor                     = executor,
                    remote_timeout_s             = remote_timeout_s)
    return result

def run_remote_call(core: Core, fn: typing.Callable[..., T], *args: typing.Any) -> T:
    '''
    Execute `fn` on the core's executor and wait at most `core.remote_timeout_s` for it. Exceptions
    raised by `fn` are re-raised in the caller. On timeout the future is cancelled (a call that
    already started keeps running in the background and its result is dropped) and
    `concurrent.futures.TimeoutError` is raised.
    '''
    future: concurrent.futures.Future[T] = core.executor.submit(fn, *args)
    try:
        result = future.result(timeout=core.remote_timeout_s)
    except concurrent.futures.TimeoutError:
        _ = future.cancel()
        raise
    return result

def extract_transaction_id(body: str) -> str:
    '''
    Pull the transaction ID out of an app receipt (PKCS#7, Bundle.main.appStoreReceiptURL) or a
    legacy transaction receipt. When the body is neither, the body itself is assumed to be the
    transaction ID, this is what a local Xcode build sends since it has no receipt.

    No validation is done on the receipt, the ID is only used to query the App Store which is the
    source of truth.
    '''
    receipt_utility    = AppleReceiptUtility()
    result: str | None = None
    try:
        result = receipt_utility.extract_transaction_id_from_app_receipt(body)
    except ValueError as e:
        log.debug(f'Body is not an app receipt ({type(e).__name__}), trying transaction receipt')

    # NOTE: Base64 and UTF-8 decoding failures (binascii.Error, UnicodeDecodeError) are ValueErrors
    if result is None:
        try:
            result = receipt_utility.extract_transaction_id_from_transaction_receipt(body)
        except ValueError as e:
            log.debug(f'Body is not a transaction receipt ({type(e).__name__}), treating body as transaction ID')

    if result is None:
        result = body
    return result

def query_subscription_statuses(core: Core, transaction_id: str, environment: AppleEnvironment) -> SubscriptionStatusQuery:
    result = SubscriptionStatusQuery()
    client = core.app_store_server_api_clients[environment]
    try:
        response: AppleStatusResponse = run_remote_call(core, client.get_all_subscription_statuses, transaction_id, SUBSCRIPTION_STATUS_FILTER)
        result.outcome = QueryOutcome.Success
        if response.data:
            result.groups = list(response.data)
    except concurrent.futures.TimeoutError:
        result.outcome = QueryOutcome.Timeout
        log.error(f'Get all subscription statuses for {base.loggable(transaction_id)} in {environment.value} timed out after {base.format_seconds(core.remote_timeout_s)}')
    except AppleAPIException as e:
        # NOTE: A 404 in production means the TX is unknown to production, it may be a sandbox TX.
        # Any other status, or a 404 in sandbox is reported to the caller as is.
        if e.http_status_code == 404 and environment == AppleEnvironment.PRODUCTION:
            result.outcome = QueryOutcome.NotFoundInProduction
            log.info(f'Transaction {base.loggable(transaction_id)} not found in production')
        else:
            result.outcome = QueryOutcome.Failure
            result.failure = SubscriptionStatusFailure(http_status_code = e.http_status_code,
                                                       raw_api_error    = e.raw_api_error,
                                                       api_error        = e.api_error,
                                                       error_message    = e.error_message,
                                                       caused_by        = e.__cause__)
    except Exception as e:
        result.outcome = QueryOutcome.Failure
        result.failure = SubscriptionStatusFailure(caused_by=e)

    if result.failure:
        failure = result.failure
        log.error(f'Get all subscription statuses in {environment.value} failed. Error: {failure.http_status_code if failure.http_status_code is not None else -1}: '
                  f'{failure.error_message or "Unknown error"}, {failure.raw_api_error} {failure.api_error}, {failure.caused_by!r}')
    return result

def _verify_signed_payload(core: Core,
                           verify_fn: typing.Callable[[str], T],
                           signed_payload: str,
                           label: str,
                           err: base.ErrorSink) -> T | None:
    result: T | None = None
    try:
        result = run_remote_call(core, verify_fn, signed_payload)
    except concurrent.futures.TimeoutError:
        err.fail(base.ErrorKind.RemoteTimeout, 504, f'Verifying {label} timed out after {base.format_seconds(core.remote_timeout_s)}')
        log.error(err.msg_list[-1])
    except AppleVerificationException as e:
        err.fail(base.ErrorKind.SignatureInvalid, 401, f'Verifying {label} failed. Error: {base.reflect_enum(e.status)}')
        log.error(err.msg_list[-1])
    return result

def verify_signed_transaction_info(core: Core, environment: AppleEnvironment, signed_transaction_info: str, err: base.ErrorSink) -> AppleJWSTransactionDecodedPayload | None:
    verifier = core.signed_data_verifiers[environment]
    result   = _verify_signed_payload(core           = core,
                                      verify_fn      = verifier.verify_and_decode_signed_transaction,
                                      signed_payload = signed_transaction_info,
                                      label          = 'signed transaction info',
                                      err            = err)
    return result

def verify_signed_renewal_info(core: Core, environment: AppleEnvironment, signed_renewal_info: str, err: base.ErrorSink) -> AppleJWSRenewalInfoDecodedPayload | None:
    verifier = core.signed_data_verifiers[environment]
    result   = _verify_signed_payload(core           = core,
                                      verify_fn      = verifier.verify_and_decode_renewal_info,
                                      signed_payload = signed_renewal_info,
                                      label          = 'signed renewal info',
                                      err            = err)
    return result
