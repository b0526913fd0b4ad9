'''
The backend layer turns a purchase proof submitted by a client into a trusted entitlement record.
It drives the Apple platform primitives (see platform_apple.py) in a fixed order:

  1. Extract the transaction ID from the body (receipt or bare ID)
  2. Query the subscription statuses in production, on "not found" query sandbox instead
  3. Aggregate the returned transactions into one status and the latest signed infos
  4. Verify the signed transaction info and signed renewal info
  5. Assemble the entitlement record from the verified claims

Any failure aborts the whole resolution, no partial record is ever returned.
'''

import dataclasses
import logging

from appstoreserverlibrary.models.Environment                     import Environment                     as AppleEnvironment
from appstoreserverlibrary.models.Status                          import Status                          as AppleStatus
from appstoreserverlibrary.models.SubscriptionGroupIdentifierItem import SubscriptionGroupIdentifierItem as AppleSubscriptionGroupIdentifierItem

import base
import platform_apple

log = logging.Logger('BACKEND')

@dataclasses.dataclass(frozen=True)
class EntitlementRecord:
    app_account_id: str | None       = None
    environment:    AppleEnvironment = AppleEnvironment.PRODUCTION
    product_id:     str              = ''
    status:         AppleStatus      = AppleStatus.EXPIRED

    def to_dict(self) -> base.JSONObject:
        result: base.JSONObject = {
            'app_account_id': self.app_account_id,
            'environment':    str(self.environment.value).lower(),
            'product_id':     self.product_id,
            'status':         self.status.name.lower(),
        }
        return result

@dataclasses.dataclass
class AggregatedTransactions:
    status:                  AppleStatus = AppleStatus.EXPIRED
    signed_transaction_info: str | None  = None
    signed_renewal_info:     str | None  = None

def aggregate_transactions(groups: list[AppleSubscriptionGroupIdentifierItem]) -> AggregatedTransactions:
    '''
    Reduce the subscription groups returned by the App Store into a single status and the signed
    infos to verify.

    Status is sticky once ACTIVE, otherwise each transaction carrying a status overwrites it. The
    signed infos are taken from the last transaction visited regardless of its status (including
    when it carries none). This relies on Apple returning groups and their transactions in ascending
    chronological order so that the last one visited carries the most recent app account token and
    product.
    '''
    result = AggregatedTransactions()
    for group in groups:
        for tx in group.lastTransactions or []:
            if result.status != AppleStatus.ACTIVE and tx.status is not None:
                result.status = tx.status
            result.signed_transaction_info = tx.signedTransactionInfo
            result.signed_renewal_info     = tx.signedRenewalInfo
    return result

def resolve_entitlement(core: platform_apple.Core, body: bytes, err: base.ErrorSink) -> EntitlementRecord | None:
    # NOTE: The server expects an App Store receipt. The receipt is not available when testing from
    # Xcode so a bare transaction ID is accepted as well.
    if len(body) == 0:
        err.fail(base.ErrorKind.MalformedBody, 400, 'Request was made without an App Store receipt or transaction ID in the body')
        log.error(err.msg_list[-1])
        return None

    body_str = ''
    try:
        body_str = body.decode('utf-8')
    except UnicodeDecodeError as e:
        err.fail(base.ErrorKind.MalformedBody, 400, f'Request body is not valid UTF-8: {e}')
        log.error(err.msg_list[-1])
        return None

    transaction_id: str = platform_apple.extract_transaction_id(body_str)

    # NOTE: Validate the transaction in production first, only if production has never heard of
    # the transaction do we try sandbox. Sandbox is the last attempt, it does not fall back further.
    environment = AppleEnvironment.PRODUCTION
    query       = platform_apple.query_subscription_statuses(core, transaction_id, environment)
    if query.outcome == platform_apple.QueryOutcome.NotFoundInProduction:
        environment = AppleEnvironment.SANDBOX
        query       = platform_apple.query_subscription_statuses(core, transaction_id, environment)

    match query.outcome:
        case platform_apple.QueryOutcome.Success:
            pass

        case platform_apple.QueryOutcome.Timeout:
            err.fail(base.ErrorKind.RemoteTimeout, 504, f'App Store did not respond in {environment.value} within {base.format_seconds(core.remote_timeout_s)}')
            return None

        case _:
            failure = query.failure or platform_apple.SubscriptionStatusFailure()
            status  = failure.http_status_code if failure.http_status_code is not None else 500
            msg     = failure.error_message or 'Unknown error'
            kind    = base.ErrorKind.TransactionNotFound if status == 404 else base.ErrorKind.RemoteAPIError
            err.fail(kind, status, msg)
            return None

    aggregated     = aggregate_transactions(query.groups)
    app_account_id = None
    product_id     = ''

    if aggregated.signed_transaction_info is not None:
        tx_info = platform_apple.verify_signed_transaction_info(core, environment, aggregated.signed_transaction_info, err)
        if tx_info is None:
            return None

        # NOTE: The token is None if the client app did not set an appAccountToken when purchasing
        app_account_id = tx_info.appAccountToken
        if tx_info.productId:
            product_id = tx_info.productId

    if aggregated.signed_renewal_info is not None:
        renewal_info = platform_apple.verify_signed_renewal_info(core, environment, aggregated.signed_renewal_info, err)
        if renewal_info is None:
            return None

        if renewal_info.productId:
            product_id = renewal_info.productId

    result = EntitlementRecord(app_account_id = app_account_id,
                               environment    = environment,
                               product_id     = product_id,
                               status         = aggregated.status)
    log.info(f'Resolved {base.loggable(transaction_id)} in {environment.value} to {result.status.name} ({result.product_id or "no product"})')
    return result
