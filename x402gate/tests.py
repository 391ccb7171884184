import base64
import json
from unittest.mock import patch

from django.http import HttpResponse
from django.test import RequestFactory, SimpleTestCase, TestCase, override_settings
from django.urls import reverse

from x402gate.chain_handlers import ChainHandlerFactory
from x402gate.gateway import PaymentGateway
from x402gate.ledger import MemoryNonceLedger
from x402gate.middleware import PaymentGatewayMiddleware
from x402gate.models import ConsumedTransaction, PaymentAuthorization, RejectedPayment
from x402gate.test_utils import (
    NATIVE_PRICE,
    NETWORK,
    NETWORKS,
    PAYER,
    RESOURCE,
    SETTLEMENT_TX,
    FakeChainHandler,
    make_authorization,
    make_catalog,
    native_header,
    native_payment,
    payment_header,
    route_config,
)


class PaymentGatewayMiddlewareTests(TestCase):
    def setUp(self) -> None:
        overrides = override_settings(
            X402_ROUTES={RESOURCE: route_config()},
            X402_NETWORKS=NETWORKS,
            X402_NONCE_LEDGER='x402gate.ledger.DatabaseNonceLedger',
        )
        overrides.enable()
        self.addCleanup(overrides.disable)

        self.handler = FakeChainHandler()
        patcher = patch.object(ChainHandlerFactory, 'get', return_value=self.handler)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_unpriced_route_passes_through(self):
        response = self.client.get(reverse('health'))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'status': 'ok'})

    def test_missing_payment_returns_requirements(self):
        response = self.client.get(RESOURCE)

        self.assertEqual(response.status_code, 402)
        body = response.json()
        self.assertEqual(body['x402Version'], 1)
        self.assertEqual(body['error'], 'payment_required')
        self.assertEqual(body['accepts'][0]['maxAmountRequired'], '50000')
        self.assertEqual(body['accepts'][0]['networkId'], NETWORK)
        self.assertEqual(body['accepts'][1]['scheme'], 'native')

    def test_trailing_slash_is_the_same_resource(self):
        response = self.client.get(RESOURCE + '/')

        self.assertEqual(response.status_code, 402)

    def test_paid_request_reaches_view(self):
        response = self.client.get(RESOURCE, HTTP_X_PAYMENT=payment_header(make_authorization()))

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body['payment']['payer'], PAYER.address)
        self.assertEqual(body['payment']['amount'], '50000')
        self.assertEqual(body['payment']['transaction'], SETTLEMENT_TX)

        receipt = json.loads(base64.b64decode(response['X-PAYMENT-RESPONSE']))
        self.assertTrue(receipt['success'])
        self.assertEqual(receipt['transaction'], SETTLEMENT_TX)
        self.assertEqual(receipt['network'], NETWORK)

        record = PaymentAuthorization.objects.get()
        self.assertEqual(record.status, PaymentAuthorization.Status.CONSUMED)
        self.assertEqual(record.payer, PAYER.address.lower())
        self.assertEqual(record.resource, RESOURCE)
        self.assertEqual(record.transaction_hash, SETTLEMENT_TX)

    def test_replayed_payment_is_rejected(self):
        header = payment_header(make_authorization())

        first = self.client.get(RESOURCE, HTTP_X_PAYMENT=header)
        second = self.client.get(RESOURCE, HTTP_X_PAYMENT=header)

        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 402)
        self.assertEqual(second.json()['error'], 'payment_already_used')
        self.assertNotIn('X-PAYMENT-RESPONSE', second)
        self.assertEqual(PaymentAuthorization.objects.count(), 1)
        self.assertEqual(len(self.handler.settle_calls), 1)

        rejection = RejectedPayment.objects.get()
        self.assertEqual(rejection.reason, 'payment_already_used')
        self.assertEqual(rejection.resource, RESOURCE)
        self.assertEqual(rejection.payer, PAYER.address.lower())

    def test_malformed_header_is_bad_request(self):
        response = self.client.get(RESOURCE, HTTP_X_PAYMENT='%%%')

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error'], 'invalid_payment_payload')

    def test_native_payment_is_redeemed_once(self):
        tx_hash = '0x' + 'cd' * 32
        self.handler.native_payments[tx_hash] = native_payment(tx_hash, block_timestamp=None)

        first = self.client.get(RESOURCE, HTTP_X_PAYMENT=native_header(tx_hash))
        second = self.client.get(RESOURCE, HTTP_X_PAYMENT=native_header(tx_hash))

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()['payment']['amount'], str(NATIVE_PRICE))
        self.assertEqual(second.status_code, 402)
        self.assertEqual(second.json()['error'], 'payment_already_used')
        self.assertEqual(ConsumedTransaction.objects.get().transaction_hash, tx_hash)

    @override_settings(X402_ROUTES={RESOURCE: route_config(pay_to='not-an-address')})
    def test_misconfigured_route_is_server_error(self):
        response = self.client.get(RESOURCE)

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()['error'], 'gateway_misconfigured')

    def test_supported_lists_accepted_kinds(self):
        response = self.client.get(reverse('x402:supported'))

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body['kinds'], [
            {'x402Version': 1, 'scheme': 'exact', 'network': NETWORK},
            {'x402Version': 1, 'scheme': 'native', 'network': NETWORK},
        ])
        self.assertEqual(body['resources'][0]['resource'], RESOURCE)


class InjectedMiddlewareTests(SimpleTestCase):
    """The middleware with explicitly injected collaborators, outside the URLconf."""

    def setUp(self) -> None:
        self.factory = RequestFactory()
        self.handler = FakeChainHandler()
        gateway = PaymentGateway(
            catalog=make_catalog(native_price_wei=None),
            ledger=MemoryNonceLedger(),
            handler_resolver=lambda network: self.handler,
        )
        self.seen = []
        self.middleware = PaymentGatewayMiddleware(self.view, gateway=gateway)

    def view(self, request):
        self.seen.append(getattr(request, 'x402', None))
        return HttpResponse('ok')

    def test_view_is_not_called_without_payment(self):
        response = self.middleware(self.factory.get(RESOURCE))

        self.assertEqual(response.status_code, 402)
        self.assertEqual(self.seen, [])
        self.assertEqual(len(json.loads(response.content)['accepts']), 1)

    def test_view_sees_paid_context(self):
        request = self.factory.get(RESOURCE, HTTP_X_PAYMENT=payment_header(make_authorization()))

        response = self.middleware(request)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.seen[0].payer, PAYER.address)
        self.assertEqual(self.seen[0].scheme, 'exact')
        self.assertIn('X-PAYMENT-RESPONSE', response)

    def test_other_paths_are_untouched(self):
        response = self.middleware(self.factory.get('/public'))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.seen, [None])
