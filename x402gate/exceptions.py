"""
Error taxonomy for the x402 payment gateway.

Every rejection carries a machine-readable ``reason`` code that is returned to
the caller as the ``error`` field of the response body.
"""
from typing import Optional


class X402GatewayError(Exception):
    """Base error for gateway failures."""

    status_code = 500
    reason = 'gateway_error'

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if reason is not None:
            self.reason = reason


class NotConfigured(X402GatewayError):
    """The route has no price; requests pass through untouched."""

    reason = 'not_configured'


class GatewayMisconfigured(X402GatewayError):
    """Settings are incomplete or inconsistent."""

    reason = 'gateway_misconfigured'


class ProtocolError(X402GatewayError):
    """Raised when the payment header cannot be decoded or validated."""

    status_code = 400
    reason = 'invalid_payment_payload'


class PaymentRejected(X402GatewayError):
    """Raised when a well-formed payment does not satisfy the requirement."""

    status_code = 402
    reason = 'payment_rejected'


class InvalidSignature(PaymentRejected):
    reason = 'invalid_signature'


class SettlementFailed(PaymentRejected):
    """On-chain revert or RPC error; the nonce reservation is released."""

    reason = 'settlement_failed'


class SettlementUnknown(PaymentRejected):
    """No terminal receipt within the timeout; access is denied for now."""

    reason = 'settlement_pending'


class PendingConfirmation(PaymentRejected):
    """The payment transaction is not mined or not confirmed enough yet."""

    reason = 'pending_confirmation'
