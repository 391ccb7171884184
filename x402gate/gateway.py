"""
Per-request payment state machine.

Happy path for the ``exact`` scheme::

    unpaid -> payload_received -> signature_valid -> nonce_reserved
           -> settling -> settled -> granted

and for the ``native`` scheme::

    unpaid -> payload_received -> settling -> settled -> granted

Without a payment header the request ends in ``challenge_issued``; any failed
check ends in ``rejected`` with a reason code.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from django.utils import timezone
from loguru import logger

from x402gate.catalog import RequirementCatalog, RouteRequirements
from x402gate.chain_handlers import ChainHandler, ChainHandlerFactory, SettlementResult, SettlementStatus
from x402gate.exceptions import (
    GatewayMisconfigured,
    PaymentRejected,
    SettlementFailed,
    SettlementUnknown,
    X402GatewayError,
)
from x402gate.ledger import NonceKey, NonceLedger, Rejection, Reservation, ReservationStatus, get_nonce_ledger
from x402gate.native import NativePaymentVerifier
from x402gate.schemas import (
    EXACT_SCHEME,
    NATIVE_SCHEME,
    X402_VERSION,
    NativePaymentPayload,
    PaymentPayload,
    PaymentRequirement,
    SettlementReceipt,
    decode_payment_header,
)
from x402gate.signatures import verify_authorization


class GatewayState(str, Enum):
    UNPAID = 'unpaid'
    CHALLENGE_ISSUED = 'challenge_issued'
    PAYLOAD_RECEIVED = 'payload_received'
    SIGNATURE_VALID = 'signature_valid'
    NONCE_RESERVED = 'nonce_reserved'
    SETTLING = 'settling'
    SETTLED = 'settled'
    GRANTED = 'granted'
    REJECTED = 'rejected'


@dataclass(frozen=True)
class PaidContext:
    """What the protected handler learns about a granted payment (``request.x402``)."""
    payer: Optional[str]
    amount: int
    network: str
    scheme: str
    resource: str
    transaction_hash: Optional[str]
    receipt: SettlementReceipt


@dataclass(frozen=True)
class GatewayOutcome:
    state: GatewayState
    status_code: int
    reason: Optional[str] = None
    message: Optional[str] = None
    accepts: Tuple[PaymentRequirement, ...] = ()
    paid: Optional[PaidContext] = None
    history: Tuple[GatewayState, ...] = ()

    @property
    def granted(self) -> bool:
        return self.state is GatewayState.GRANTED

    def body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            'x402Version': X402_VERSION,
            'error': self.reason,
            'accepts': [requirement.to_wire() for requirement in self.accepts],
        }
        if self.message:
            body['message'] = self.message
        return body


@dataclass
class _Trail:
    states: List[GatewayState] = field(default_factory=lambda: [GatewayState.UNPAID])
    scheme: str = ''
    payer: Optional[str] = None
    nonce: Optional[str] = None
    transaction_hash: Optional[str] = None

    def enter(self, state: GatewayState) -> None:
        self.states.append(state)

    def freeze(self) -> Tuple[GatewayState, ...]:
        return tuple(self.states)


def _reject(reason: str, message: str) -> PaymentRejected:
    return PaymentRejected(message, reason=reason)


class PaymentGateway:
    def __init__(
        self,
        catalog: Optional[RequirementCatalog] = None,
        ledger: Optional[NonceLedger] = None,
        handler_resolver: Optional[Callable[[str], ChainHandler]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.catalog = catalog or RequirementCatalog.from_settings()
        self.ledger = ledger or get_nonce_ledger()
        self.handler_resolver = handler_resolver
        self.clock = clock or (lambda: timezone.now().timestamp())

    def _handler(self, network: str) -> ChainHandler:
        resolver = self.handler_resolver or ChainHandlerFactory.get
        return resolver(network)

    def challenge(self, route: RouteRequirements) -> GatewayOutcome:
        return GatewayOutcome(
            state=GatewayState.CHALLENGE_ISSUED,
            status_code=402,
            reason='payment_required',
            accepts=tuple(route.accepts()),
            history=(GatewayState.UNPAID, GatewayState.CHALLENGE_ISSUED),
        )

    def process(self, route: RouteRequirements, header: Optional[str]) -> GatewayOutcome:
        if not header:
            return self.challenge(route)

        trail = _Trail()
        try:
            payment = decode_payment_header(header)
            trail.enter(GatewayState.PAYLOAD_RECEIVED)
            trail.scheme = payment.scheme
            if isinstance(payment, NativePaymentPayload):
                paid = self._process_native(route, payment, trail)
            else:
                paid = self._process_exact(route, payment, trail)
        except GatewayMisconfigured as exc:
            logger.error('x402 gateway misconfiguration for {}: {}', route.resource, exc.message)
            return self._rejected(route, exc, trail, message='Payment gateway misconfiguration.')
        except X402GatewayError as exc:
            logger.info('x402 payment rejected for {}: {} ({})',
                        route.resource, exc.reason, exc.message)
            return self._rejected(route, exc, trail)

        trail.enter(GatewayState.GRANTED)
        logger.info('x402 access granted for {} to {} via {}',
                    route.resource, paid.payer, paid.transaction_hash)
        return GatewayOutcome(
            state=GatewayState.GRANTED,
            status_code=200,
            paid=paid,
            history=trail.freeze(),
        )

    def _rejected(self, route, exc: X402GatewayError, trail: _Trail, message: Optional[str] = None) -> GatewayOutcome:
        trail.enter(GatewayState.REJECTED)
        self.ledger.record_rejection(Rejection(
            resource=route.resource,
            reason=exc.reason,
            message=exc.message,
            status_code=exc.status_code,
            network=route.network,
            scheme=trail.scheme,
            payer=trail.payer,
            nonce=trail.nonce,
            transaction_hash=trail.transaction_hash,
        ))
        return GatewayOutcome(
            state=GatewayState.REJECTED,
            status_code=exc.status_code,
            reason=exc.reason,
            message=message or exc.message,
            accepts=tuple(route.accepts()),
            history=trail.freeze(),
        )

    def _check_window(self, authorization) -> None:
        now = int(self.clock())
        if now >= authorization.valid_before:
            raise _reject('authorization_expired', 'Authorization window has expired.')
        if now < authorization.valid_after:
            raise _reject('not_yet_valid', 'Authorization not yet valid.')

    def _process_exact(self, route: RouteRequirements, payment: PaymentPayload, trail: _Trail) -> PaidContext:
        requirement = route.for_scheme(payment.scheme)
        if payment.network.lower() != requirement.network_id.lower():
            raise _reject('unsupported_payment',
                          f'Network {payment.network!r} is not accepted; expected {requirement.network_id!r}.')
        if payment.asset and payment.asset.lower() != requirement.asset_address.lower():
            raise _reject('unsupported_payment', f'Asset {payment.asset} is not accepted.')

        authorization = payment.payload.authorization
        signature = payment.payload.signature
        trail.nonce = authorization.nonce

        payer = verify_authorization(route.domain, authorization, signature)
        trail.enter(GatewayState.SIGNATURE_VALID)
        trail.payer = payer

        if authorization.to != requirement.pay_to_address:
            raise _reject('invalid_recipient',
                          f'Authorization pays {authorization.to}, expected {requirement.pay_to_address}.')
        if authorization.value < requirement.max_amount_required:
            raise _reject('insufficient_amount',
                          f'Authorized {authorization.value} but {requirement.max_amount_required} is required.')

        handler = self._handler(route.network)

        key = NonceKey.for_authorization(requirement.asset_address, authorization)
        reservation = self.ledger.reserve(
            key, network=route.network, resource=route.resource, value=authorization.value)
        if not reservation.acquired:
            raise _reject('payment_already_used', 'Authorization nonce already processed.')
        trail.enter(GatewayState.NONCE_RESERVED)

        # A resumed nonce was already submitted; its receipt decides, not the clock.
        if reservation.status is ReservationStatus.GRANTED:
            try:
                self._check_window(authorization)
            except PaymentRejected:
                self.ledger.release(key)
                raise

        trail.enter(GatewayState.SETTLING)
        result = self._settle(handler, key, reservation, payment, requirement, trail)
        trail.enter(GatewayState.SETTLED)

        receipt = SettlementReceipt(
            success=True,
            transaction=result.transaction_hash,
            network=route.network,
            payer=payer,
            amount=str(authorization.value),
            scheme=EXACT_SCHEME,
        )
        return PaidContext(
            payer=payer,
            amount=authorization.value,
            network=route.network,
            scheme=EXACT_SCHEME,
            resource=route.resource,
            transaction_hash=result.transaction_hash,
            receipt=receipt,
        )

    def _settle(
        self,
        handler: ChainHandler,
        key: NonceKey,
        reservation: Reservation,
        payment: PaymentPayload,
        requirement: PaymentRequirement,
        trail: _Trail,
    ) -> SettlementResult:
        authorization = payment.payload.authorization
        try:
            if reservation.status is ReservationStatus.RESUMED and reservation.transaction_hash:
                logger.info('Reconciling pending settlement {} for nonce {}',
                            reservation.transaction_hash, key.nonce)
                result = handler.check_settlement(
                    reservation.transaction_hash, authorization, payment.payload.signature, requirement)
            else:
                result = handler.settle_payment(
                    authorization, payment.payload.signature, requirement)
        except Exception as exc:
            logger.exception('x402 settlement raised for nonce {}: {}', key.nonce, exc)
            result = SettlementResult(
                status=SettlementStatus.FAILED,
                failure_reason='Settlement error',
            )
        trail.transaction_hash = result.transaction_hash

        if result.status is SettlementStatus.SUCCESS:
            if not self.ledger.commit(key, result):
                logger.error('Nonce {} settled in {} but its reservation was lost',
                             key.nonce, result.transaction_hash)
            logger.info('x402 settlement succeeded for nonce {}: {}',
                        key.nonce, handler.get_explorer_url(result.transaction_hash))
            return result

        if result.status is SettlementStatus.UNKNOWN:
            self.ledger.suspend(key, result.transaction_hash)
            raise SettlementUnknown(
                result.failure_reason or 'Settlement outcome not yet known; retry later.')

        self.ledger.release(key)
        logger.error('x402 settlement failed for nonce {}: {}', key.nonce, result.failure_reason)
        raise SettlementFailed(result.failure_reason or 'Settlement transaction failed.')

    def _process_native(self, route: RouteRequirements, payment: NativePaymentPayload, trail: _Trail) -> PaidContext:
        requirement = route.for_scheme(NATIVE_SCHEME)
        if payment.network and payment.network.lower() != requirement.network_id.lower():
            raise _reject('unsupported_payment',
                          f'Network {payment.network!r} is not accepted; expected {requirement.network_id!r}.')

        tx_hash = payment.payload.tx_hash
        trail.transaction_hash = tx_hash
        if self.ledger.is_transaction_consumed(tx_hash):
            raise _reject('payment_already_used', 'Payment transaction already redeemed.')

        verifier = NativePaymentVerifier(self._handler(route.network), clock=self.clock)
        trail.enter(GatewayState.SETTLING)
        observed = verifier.verify(
            tx_hash,
            requirement,
            required_confirmations=route.required_confirmations,
            max_age_seconds=route.native_max_age_seconds,
        )
        if not self.ledger.consume_transaction(observed, network=route.network, resource=route.resource):
            raise _reject('payment_already_used', 'Payment transaction already redeemed.')
        trail.enter(GatewayState.SETTLED)

        receipt = SettlementReceipt(
            success=True,
            transaction=observed.transaction_hash,
            network=route.network,
            payer=observed.from_address,
            amount=str(observed.value_wei),
            scheme=NATIVE_SCHEME,
        )
        return PaidContext(
            payer=observed.from_address,
            amount=observed.value_wei,
            network=route.network,
            scheme=NATIVE_SCHEME,
            resource=route.resource,
            transaction_hash=observed.transaction_hash,
            receipt=receipt,
        )
