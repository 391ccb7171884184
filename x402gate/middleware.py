"""
Django middleware that puts x402 payment gating in front of priced routes.

Routes without a price in ``X402_ROUTES`` pass straight through. For priced
routes the ``X-PAYMENT`` header is run through :class:`PaymentGateway`; only a
granted payment reaches the view, which then finds the payment details on
``request.x402`` and the response carries an ``X-PAYMENT-RESPONSE`` receipt.
"""
from typing import Optional

from django.http import JsonResponse
from loguru import logger

from x402gate.exceptions import GatewayMisconfigured, NotConfigured
from x402gate.gateway import PaymentGateway
from x402gate.schemas import X402_VERSION

PAYMENT_HEADER = 'HTTP_X_PAYMENT'
PAYMENT_RESPONSE_HEADER = 'X-PAYMENT-RESPONSE'


class PaymentGatewayMiddleware:
    def __init__(self, get_response, gateway: Optional[PaymentGateway] = None):
        self.get_response = get_response
        self.gateway = gateway or PaymentGateway()

    def __call__(self, request):
        try:
            route = self.gateway.catalog.lookup(request.path_info)
        except NotConfigured:
            return self.get_response(request)
        except GatewayMisconfigured as exc:
            logger.error('x402 route configuration error for {}: {}', request.path_info, exc.message)
            return JsonResponse(
                {
                    'x402Version': X402_VERSION,
                    'error': exc.reason,
                    'message': 'Payment gateway misconfiguration.',
                    'accepts': [],
                },
                status=exc.status_code,
            )

        outcome = self.gateway.process(route, request.META.get(PAYMENT_HEADER))
        if not outcome.granted:
            return JsonResponse(outcome.body(), status=outcome.status_code)

        request.x402 = outcome.paid
        response = self.get_response(request)
        response[PAYMENT_RESPONSE_HEADER] = outcome.paid.receipt.encode()
        response['Access-Control-Expose-Headers'] = PAYMENT_RESPONSE_HEADER
        return response
