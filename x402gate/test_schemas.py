import base64
import json

from django.test import SimpleTestCase

from x402gate.exceptions import InvalidSignature, ProtocolError
from x402gate.schemas import NativePaymentPayload, PaymentPayload, decode_payment_header
from x402gate.signatures import recover_signer, sign_authorization, verify_authorization
from x402gate.test_utils import ASSET, NETWORK, PAYER, PAYER_KEY, make_authorization, signing_domain


def encode(body) -> str:
    return base64.b64encode(json.dumps(body).encode('utf-8')).decode('ascii')


class DecodePaymentHeaderTests(SimpleTestCase):
    def exact_body(self, **overrides):
        authorization = make_authorization()
        body = {
            'x402Version': 1,
            'scheme': 'exact',
            'network': NETWORK,
            'payload': {
                'signature': sign_authorization(PAYER_KEY, signing_domain(), authorization),
                'authorization': authorization.model_dump(by_alias=True),
            },
        }
        body.update(overrides)
        return body

    def test_exact_payload(self):
        payment = decode_payment_header(encode(self.exact_body()))

        self.assertIsInstance(payment, PaymentPayload)
        self.assertEqual(payment.network, NETWORK)
        self.assertEqual(payment.payload.authorization.from_, PAYER.address)

    def test_network_id_and_asset_address_spellings(self):
        body = self.exact_body(assetAddress=ASSET)
        body['networkId'] = body.pop('network')

        payment = decode_payment_header(encode(body))

        self.assertEqual(payment.network, NETWORK)
        self.assertEqual(payment.asset, ASSET)

    def test_addresses_are_checksummed(self):
        body = self.exact_body()
        body['payload']['authorization']['from'] = PAYER.address.lower()

        payment = decode_payment_header(encode(body))

        self.assertEqual(payment.payload.authorization.from_, PAYER.address)

    def test_bare_transaction_hash_is_native(self):
        tx_hash = '0x' + 'AB' * 32

        payment = decode_payment_header(encode({'txHash': tx_hash}))

        self.assertIsInstance(payment, NativePaymentPayload)
        self.assertEqual(payment.payload.tx_hash, tx_hash.lower())
        self.assertIsNone(payment.network)

    def test_rejects_non_object(self):
        with self.assertRaises(ProtocolError):
            decode_payment_header(encode(['exact']))

    def test_rejects_short_nonce(self):
        body = self.exact_body()
        body['payload']['authorization']['nonce'] = '0x1234'

        with self.assertRaises(ProtocolError):
            decode_payment_header(encode(body))

    def test_rejects_short_signature(self):
        body = self.exact_body()
        body['payload']['signature'] = '0x' + '00' * 64

        with self.assertRaises(ProtocolError):
            decode_payment_header(encode(body))

    def test_rejects_other_protocol_version(self):
        with self.assertRaises(ProtocolError) as ctx:
            decode_payment_header(encode(self.exact_body(x402Version=2)))

        self.assertEqual(ctx.exception.reason, 'invalid_payment_payload')

    def test_rejects_other_protocol_version_for_native(self):
        body = {'x402Version': 0, 'scheme': 'native', 'network': NETWORK, 'payload': {'txHash': '0x' + 'ab' * 32}}

        with self.assertRaises(ProtocolError):
            decode_payment_header(encode(body))

    def test_rejects_missing_authorization(self):
        body = self.exact_body()
        del body['payload']['authorization']

        with self.assertRaises(ProtocolError):
            decode_payment_header(encode(body))


class SignatureVerifierTests(SimpleTestCase):
    def test_recovers_payer(self):
        authorization = make_authorization()
        signature = sign_authorization(PAYER_KEY, signing_domain(), authorization)

        self.assertEqual(recover_signer(signing_domain(), authorization, signature), PAYER.address)
        self.assertEqual(verify_authorization(signing_domain(), authorization, signature), PAYER.address)

    def test_domain_name_is_bound(self):
        authorization = make_authorization()
        signature = sign_authorization(PAYER_KEY, signing_domain(name='Fake Coin'), authorization)

        with self.assertRaises(InvalidSignature):
            verify_authorization(signing_domain(), authorization, signature)

    def test_garbage_signature(self):
        with self.assertRaises(InvalidSignature):
            verify_authorization(signing_domain(), make_authorization(), '0x' + 'ff' * 65)
