"""
EIP-712 verification for EIP-3009 ``transferWithAuthorization`` messages.

The typed-data domain always comes from the route configuration. Nothing in
the client payload can influence the chain id or verifying contract that the
signature is checked against.
"""
from dataclasses import dataclass
from typing import Any, Dict

from eth_account import Account
from eth_account.messages import encode_typed_data
from hexbytes import HexBytes
from loguru import logger

from x402gate.exceptions import InvalidSignature
from x402gate.schemas import Authorization, normalize_address


EIP712_DOMAIN_TYPE = [
    {'name': 'name', 'type': 'string'},
    {'name': 'version', 'type': 'string'},
    {'name': 'chainId', 'type': 'uint256'},
    {'name': 'verifyingContract', 'type': 'address'},
]

TRANSFER_WITH_AUTHORIZATION_TYPE = [
    {'name': 'from', 'type': 'address'},
    {'name': 'to', 'type': 'address'},
    {'name': 'value', 'type': 'uint256'},
    {'name': 'validAfter', 'type': 'uint256'},
    {'name': 'validBefore', 'type': 'uint256'},
    {'name': 'nonce', 'type': 'bytes32'},
]


@dataclass(frozen=True)
class SigningDomain:
    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'version': self.version,
            'chainId': int(self.chain_id),
            'verifyingContract': normalize_address(self.verifying_contract),
        }


def build_typed_data(domain: SigningDomain, authorization: Authorization) -> dict:
    return {
        'types': {
            'EIP712Domain': EIP712_DOMAIN_TYPE,
            'TransferWithAuthorization': TRANSFER_WITH_AUTHORIZATION_TYPE,
        },
        'primaryType': 'TransferWithAuthorization',
        'domain': domain.as_dict(),
        'message': {
            'from': authorization.from_,
            'to': authorization.to,
            'value': int(authorization.value),
            'validAfter': int(authorization.valid_after),
            'validBefore': int(authorization.valid_before),
            'nonce': HexBytes(authorization.nonce),
        },
    }


def recover_signer(domain: SigningDomain, authorization: Authorization, signature: str) -> str:
    """
    Recover the address that signed ``authorization`` under ``domain``.

    Raises:
        InvalidSignature: If the message cannot be encoded or the signature
            cannot be recovered.
    """
    try:
        signable = encode_typed_data(full_message=build_typed_data(domain, authorization))
    except Exception as exc:  # encode_typed_data raises many exception types
        raise InvalidSignature(
            'Failed to encode authorization for signature recovery.') from exc

    try:
        recovered = Account.recover_message(signable, signature=HexBytes(signature))
    except Exception as exc:
        logger.debug('signature recovery failed: {}', exc)
        raise InvalidSignature('Unable to recover signer from signature.') from exc

    return normalize_address(recovered)


def verify_authorization(domain: SigningDomain, authorization: Authorization, signature: str) -> str:
    """Return the payer address if ``signature`` was produced by ``authorization.from``."""
    payer = recover_signer(domain, authorization, signature)
    if payer != authorization.from_:
        raise InvalidSignature('Signature does not match authorization originator.')
    return payer


def sign_authorization(private_key: str, domain: SigningDomain, authorization: Authorization) -> str:
    """Sign ``authorization`` the way an x402 client would. Used by tooling and tests."""
    signable = encode_typed_data(full_message=build_typed_data(domain, authorization))
    signed = Account.sign_message(signable, private_key=private_key)
    return '0x' + bytes(signed.signature).hex()
