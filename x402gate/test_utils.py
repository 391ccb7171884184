"""
Shared fixtures for the gateway tests: signed payment headers and a scripted
chain handler that never touches the network.
"""
import base64
import json
import os
import threading
import time
from typing import Dict, List, Optional

from eth_account import Account
from web3 import Web3

from x402gate.catalog import RequirementCatalog
from x402gate.chain_handlers import ChainHandler, NativePayment, SettlementResult, SettlementStatus
from x402gate.schemas import Authorization
from x402gate.signatures import SigningDomain, sign_authorization

NETWORK = 'avalanche-fuji'
CHAIN_ID = 43113
ASSET = '0x5425890298aed601595a70ab815c96711a31bc65'
RESOURCE = '/agent/premium-data'
PRICE = 50000
NATIVE_PRICE = 10 ** 15
NOW = 1_750_000_000

PAYER_KEY = '0x' + '11' * 32
PAYER = Account.from_key(PAYER_KEY)
PAY_TO = Account.from_key('0x' + '22' * 32).address
STRANGER = Account.from_key('0x' + '33' * 32).address

SETTLEMENT_TX = '0x' + 'ab' * 32

NETWORKS = {
    NETWORK: {
        'chain_id': CHAIN_ID,
        'rpc_url': 'http://localhost:8545',
        'explorer_url': 'https://testnet.snowtrace.io',
    },
}


def route_config(**overrides) -> dict:
    conf = {
        'price': str(PRICE),
        'network': NETWORK,
        'asset': ASSET,
        'asset_name': 'USD Coin',
        'asset_version': '2',
        'pay_to': PAY_TO,
        'description': 'Premium market data',
        'native_price_wei': str(NATIVE_PRICE),
        'required_confirmations': 1,
    }
    conf.update(overrides)
    return conf


def make_catalog(**overrides) -> RequirementCatalog:
    return RequirementCatalog({RESOURCE: route_config(**overrides)}, NETWORKS)


def signing_domain(chain_id: int = CHAIN_ID, asset: str = ASSET, name: str = 'USD Coin') -> SigningDomain:
    return SigningDomain(name=name, version='2', chain_id=chain_id, verifying_contract=asset)


def make_authorization(
    value: int = PRICE,
    to: str = PAY_TO,
    now: Optional[int] = None,
    valid_after: Optional[int] = None,
    valid_before: Optional[int] = None,
    nonce: Optional[str] = None,
) -> Authorization:
    now = int(now if now is not None else time.time())
    return Authorization(**{
        'from': PAYER.address,
        'to': to,
        'value': value,
        'validAfter': valid_after if valid_after is not None else now - 60,
        'validBefore': valid_before if valid_before is not None else now + 600,
        'nonce': nonce or '0x' + os.urandom(32).hex(),
    })


def _encode(body: dict) -> str:
    return base64.b64encode(json.dumps(body).encode('utf-8')).decode('ascii')


def payment_header(
    authorization: Authorization,
    domain: Optional[SigningDomain] = None,
    signature: Optional[str] = None,
    network: str = NETWORK,
    scheme: str = 'exact',
    **payload_overrides,
) -> str:
    signature = signature or sign_authorization(PAYER_KEY, domain or signing_domain(), authorization)
    authorization_body = authorization.model_dump(by_alias=True)
    authorization_body.update(payload_overrides)
    return _encode({
        'x402Version': 1,
        'scheme': scheme,
        'network': network,
        'payload': {
            'signature': signature,
            'authorization': authorization_body,
        },
    })


def native_header(tx_hash: str, network: str = NETWORK) -> str:
    return _encode({
        'x402Version': 1,
        'scheme': 'native',
        'network': network,
        'payload': {'txHash': tx_hash},
    })


def native_payment(tx_hash: str, mined: bool = True, status: int = 1, to: str = PAY_TO,
                   value: int = NATIVE_PRICE, confirmations: int = 3, block_timestamp: int = NOW - 30) -> NativePayment:
    return NativePayment(
        transaction_hash=tx_hash,
        from_address=PAYER.address,
        to_address=to,
        value_wei=value,
        block_number=100 if mined else None,
        confirmations=confirmations if mined else 0,
        status=status if mined else None,
        block_timestamp=block_timestamp if mined else None,
    )


def settled(tx_hash: str = SETTLEMENT_TX) -> SettlementResult:
    return SettlementResult(status=SettlementStatus.SUCCESS, transaction_hash=tx_hash, block_confirmations=1)


class FakeChainHandler(ChainHandler):
    """Returns scripted settlement results; records every call."""

    def __init__(self, results: Optional[List[SettlementResult]] = None,
                 checks: Optional[List[SettlementResult]] = None, delay: float = 0):
        super().__init__(NETWORK, dict(NETWORKS[NETWORK]))
        self.results = list(results or [])
        self.checks = list(checks or [])
        self.native_payments: Dict[str, NativePayment] = {}
        self.settle_calls: List[str] = []
        self.check_calls: List[str] = []
        self.delay = delay
        self._lock = threading.Lock()

    @property
    def chain_name(self) -> str:
        return 'fake'

    def settle_payment(self, authorization, signature, requirement):
        with self._lock:
            self.settle_calls.append(authorization.nonce)
            result = self.results.pop(0) if self.results else settled()
        if self.delay:
            time.sleep(self.delay)
        if isinstance(result, Exception):
            raise result
        return result

    def check_settlement(self, transaction_hash, authorization, signature, requirement):
        with self._lock:
            self.check_calls.append(transaction_hash)
            return self.checks.pop(0) if self.checks else settled(transaction_hash)

    def get_native_payment(self, transaction_hash):
        return self.native_payments.get(transaction_hash)

    def validate_address(self, address):
        return Web3.is_address(address)
