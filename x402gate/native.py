"""
Native-asset payment fallback.

The client pays ``payToAddress`` directly with a plain value transfer and
presents the transaction hash. Nothing is signed off-chain, so every check is
made against the chain's own record of the transaction.
"""
from typing import Callable, Optional

from django.utils import timezone
from loguru import logger

from x402gate.chain_handlers import ChainHandler, NativePayment
from x402gate.exceptions import PaymentRejected, PendingConfirmation, SettlementFailed
from x402gate.schemas import PaymentRequirement


class NativePaymentVerifier:
    def __init__(self, handler: ChainHandler, clock: Optional[Callable[[], float]] = None):
        self.handler = handler
        self.clock = clock or (lambda: timezone.now().timestamp())

    def verify(
        self,
        transaction_hash: str,
        requirement: PaymentRequirement,
        required_confirmations: int = 1,
        max_age_seconds: Optional[int] = None,
    ) -> NativePayment:
        """
        Return the observed payment once it satisfies ``requirement``.

        Raises:
            PendingConfirmation: Not mined yet, or fewer confirmations than required.
            SettlementFailed: The transaction reverted or the node could not be queried.
            PaymentRejected: Wrong recipient, too little value, or too old.
        """
        try:
            payment = self.handler.get_native_payment(transaction_hash)
        except Exception as exc:
            logger.error('Native payment lookup failed for {}: {}', transaction_hash, exc)
            raise SettlementFailed('Unable to look up payment transaction.') from exc

        if payment is None or not payment.is_mined:
            raise PendingConfirmation('Payment transaction is not mined yet.')

        if payment.status != 1:
            raise SettlementFailed('Payment transaction failed on-chain.')

        if payment.to_address != requirement.pay_to_address:
            raise PaymentRejected(
                f'Payment was sent to {payment.to_address}, expected {requirement.pay_to_address}.',
                reason='invalid_recipient',
            )

        if payment.value_wei < requirement.max_amount_required:
            raise PaymentRejected(
                f'Paid {payment.value_wei} wei but {requirement.max_amount_required} is required.',
                reason='insufficient_amount',
            )

        if payment.confirmations < required_confirmations:
            raise PendingConfirmation(
                f'Payment has {payment.confirmations} of {required_confirmations} confirmations.')

        if max_age_seconds and payment.block_timestamp is not None:
            age = int(self.clock()) - payment.block_timestamp
            if age > max_age_seconds:
                raise PaymentRejected(
                    f'Payment transaction is {age}s old; maximum is {max_age_seconds}s.',
                    reason='authorization_expired',
                )

        return payment
