"""
Wire schemas for the x402 payment gateway.

Payment headers are untrusted input: every model forbids unknown fields and
normalizes addresses, nonces and signatures before any cryptography runs.
"""
from __future__ import annotations

import base64
import binascii
import json
from typing import Any, Dict, Literal, Optional, Union

from hexbytes import HexBytes
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_serializer, field_validator
from web3 import Web3

from x402gate.exceptions import ProtocolError


X402_VERSION = 1
EXACT_SCHEME = 'exact'
NATIVE_SCHEME = 'native'


def normalize_address(address: str) -> str:
    if not isinstance(address, str) or not Web3.is_address(address):
        raise ValueError(f'Invalid ethereum address: {address}')
    return Web3.to_checksum_address(address)


def _normalize_hex(value: str, length: int, name: str) -> str:
    try:
        raw = HexBytes(value)
    except (ValueError, TypeError) as exc:
        raise ValueError(f'{name} must be hex encoded.') from exc
    if len(raw) != length:
        raise ValueError(f'{name} must be {length} bytes.')
    return '0x' + bytes(raw).hex()


class StrictModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='forbid')


def supported_version(value: int) -> int:
    if value != X402_VERSION:
        raise ValueError(f'Unsupported x402Version {value}; expected {X402_VERSION}.')
    return value


class Authorization(StrictModel):
    """EIP-3009 ``TransferWithAuthorization`` message as signed by the payer."""

    from_: str = Field(alias='from')
    to: str
    value: int = Field(ge=0)
    valid_after: int = Field(alias='validAfter', ge=0)
    valid_before: int = Field(alias='validBefore', ge=0)
    nonce: str

    @field_validator('from_', 'to')
    @classmethod
    def _checksum(cls, value: str) -> str:
        return normalize_address(value)

    @field_validator('nonce')
    @classmethod
    def _nonce(cls, value: str) -> str:
        return _normalize_hex(value, 32, 'Authorization nonce')


class ExactPayload(StrictModel):
    authorization: Authorization
    signature: str

    @field_validator('signature')
    @classmethod
    def _signature(cls, value: str) -> str:
        return _normalize_hex(value, 65, 'Authorization signature')


class PaymentPayload(StrictModel):
    x402_version: int = Field(alias='x402Version')
    scheme: str
    network: str = Field(validation_alias=AliasChoices('network', 'networkId'))
    asset: Optional[str] = Field(default=None, validation_alias=AliasChoices('asset', 'assetAddress'))
    payload: ExactPayload

    @field_validator('x402_version')
    @classmethod
    def _version(cls, value: int) -> int:
        return supported_version(value)


class NativePaymentProof(StrictModel):
    tx_hash: str = Field(alias='txHash')

    @field_validator('tx_hash')
    @classmethod
    def _tx_hash(cls, value: str) -> str:
        return _normalize_hex(value, 32, 'Transaction hash')


class NativePaymentPayload(StrictModel):
    x402_version: int = Field(default=X402_VERSION, alias='x402Version')
    scheme: Literal['native'] = NATIVE_SCHEME
    network: Optional[str] = Field(default=None, validation_alias=AliasChoices('network', 'networkId'))
    payload: NativePaymentProof

    @field_validator('x402_version')
    @classmethod
    def _version(cls, value: int) -> int:
        return supported_version(value)


class PaymentRequirement(BaseModel):
    """What must be paid to access ``resource``. Regenerated per request."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    scheme: str
    network_id: str = Field(alias='networkId')
    asset_address: Optional[str] = Field(default=None, alias='assetAddress')
    pay_to_address: str = Field(alias='payToAddress')
    max_amount_required: int = Field(alias='maxAmountRequired', ge=0)
    resource: str
    description: str = ''
    expires_in_seconds: int = Field(default=600, alias='expiresInSeconds')
    extra: Dict[str, Any] = Field(default_factory=dict)

    @field_serializer('max_amount_required')
    def _serialize_amount(self, value: int) -> str:
        return str(value)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class SettlementReceipt(BaseModel):
    """Body of the ``X-Payment-Response`` header."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    transaction: Optional[str] = None
    network: str
    payer: Optional[str] = None
    amount: str
    scheme: str = EXACT_SCHEME

    def encode(self) -> str:
        body = json.dumps(self.model_dump(by_alias=True), separators=(',', ':'))
        return base64.b64encode(body.encode('utf-8')).decode('ascii')


DecodedPayment = Union[PaymentPayload, NativePaymentPayload]


def decode_payment_header(header: str) -> DecodedPayment:
    """
    Decode an ``X-PAYMENT`` header value.

    Raises:
        ProtocolError: If the value is not base64 JSON matching one of the
            accepted payload shapes.
    """
    try:
        raw = base64.b64decode(header.strip(), validate=True)
        data = json.loads(raw.decode('utf-8'))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise ProtocolError('Payment header is not base64 encoded JSON.') from exc

    if not isinstance(data, dict):
        raise ProtocolError('Payment header must encode a JSON object.')

    try:
        if 'txHash' in data:
            return NativePaymentPayload(payload=NativePaymentProof.model_validate(data))
        if data.get('scheme') == NATIVE_SCHEME:
            return NativePaymentPayload.model_validate(data)
        return PaymentPayload.model_validate(data)
    except ValidationError as exc:
        raise ProtocolError(
            f'Invalid payment payload: {exc.error_count()} validation error(s).') from exc
