"""
Replay protection for payment authorizations and native payment hashes.

A nonce key moves through::

    absent --reserve--> reserved --commit--> consumed
                        reserved --release--> absent
                        reserved --suspend--> pending --reserve--> reserved (resumed)

Every transition is a single compare-and-set so that concurrent requests
carrying the same authorization are serialized and exactly one of them wins.
"""
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Set

from django.conf import settings
from django.db import IntegrityError, transaction
from django.utils import timezone
from django.utils.module_loading import import_string
from loguru import logger

from x402gate.chain_handlers import NativePayment, SettlementResult
from x402gate.models import ConsumedTransaction, PaymentAuthorization, RejectedPayment
from x402gate.schemas import Authorization


class ReservationStatus(str, Enum):
    GRANTED = 'granted'
    RESUMED = 'resumed'
    ALREADY_RESERVED = 'already_reserved'
    ALREADY_CONSUMED = 'already_consumed'


@dataclass(frozen=True)
class NonceKey:
    asset: str
    payer: str
    nonce: str

    @classmethod
    def for_authorization(cls, asset: str, authorization: Authorization) -> 'NonceKey':
        return cls(
            asset=asset.lower(),
            payer=authorization.from_.lower(),
            nonce=authorization.nonce.lower(),
        )


@dataclass(frozen=True)
class Reservation:
    status: ReservationStatus
    transaction_hash: Optional[str] = None

    @property
    def acquired(self) -> bool:
        return self.status in (ReservationStatus.GRANTED, ReservationStatus.RESUMED)


@dataclass(frozen=True)
class Rejection:
    """A payment attempt that ended without access."""
    resource: str
    reason: str
    message: str = ''
    status_code: int = 402
    network: str = ''
    scheme: str = ''
    payer: Optional[str] = None
    nonce: Optional[str] = None
    transaction_hash: Optional[str] = None


class NonceLedger(ABC):
    @abstractmethod
    def reserve(self, key: NonceKey, network: str = '', resource: str = '', value: int = 0) -> Reservation:
        pass

    @abstractmethod
    def commit(self, key: NonceKey, result: SettlementResult) -> bool:
        pass

    @abstractmethod
    def release(self, key: NonceKey) -> bool:
        pass

    @abstractmethod
    def suspend(self, key: NonceKey, transaction_hash: Optional[str]) -> bool:
        pass

    @abstractmethod
    def state(self, key: NonceKey) -> Optional[str]:
        pass

    @abstractmethod
    def consume_transaction(self, payment: NativePayment, network: str = '', resource: str = '') -> bool:
        """Record ``payment`` as redeemed. Returns False if it already was."""
        pass

    @abstractmethod
    def is_transaction_consumed(self, transaction_hash: str) -> bool:
        pass

    @abstractmethod
    def record_rejection(self, rejection: Rejection) -> None:
        pass


@dataclass
class _Entry:
    state: str
    transaction_hash: Optional[str] = None


class MemoryNonceLedger(NonceLedger):
    """Mutex-guarded maps. Only safe for single-process deployments."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[NonceKey, _Entry] = {}
        self._transactions: Set[str] = set()
        self.rejections: List[Rejection] = []

    def reserve(self, key, network='', resource='', value=0):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._entries[key] = _Entry(PaymentAuthorization.Status.RESERVED)
                return Reservation(ReservationStatus.GRANTED)
            if entry.state == PaymentAuthorization.Status.CONSUMED:
                return Reservation(ReservationStatus.ALREADY_CONSUMED)
            if entry.state == PaymentAuthorization.Status.PENDING:
                entry.state = PaymentAuthorization.Status.RESERVED
                return Reservation(ReservationStatus.RESUMED, entry.transaction_hash)
            return Reservation(ReservationStatus.ALREADY_RESERVED)

    def commit(self, key, result):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.state != PaymentAuthorization.Status.RESERVED:
                return False
            entry.state = PaymentAuthorization.Status.CONSUMED
            entry.transaction_hash = result.transaction_hash
            return True

    def release(self, key):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.state != PaymentAuthorization.Status.RESERVED:
                return False
            del self._entries[key]
            return True

    def suspend(self, key, transaction_hash):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.state != PaymentAuthorization.Status.RESERVED:
                return False
            entry.state = PaymentAuthorization.Status.PENDING
            entry.transaction_hash = transaction_hash
            return True

    def state(self, key):
        with self._lock:
            entry = self._entries.get(key)
            return entry.state if entry else None

    def consume_transaction(self, payment, network='', resource=''):
        tx_hash = payment.transaction_hash.lower()
        with self._lock:
            if tx_hash in self._transactions:
                return False
            self._transactions.add(tx_hash)
            return True

    def is_transaction_consumed(self, transaction_hash):
        with self._lock:
            return transaction_hash.lower() in self._transactions

    def record_rejection(self, rejection):
        with self._lock:
            self.rejections.append(rejection)


class DatabaseNonceLedger(NonceLedger):
    """Ledger backed by unique constraints; survives restarts and spans processes."""

    def _records(self, key: NonceKey):
        return PaymentAuthorization.objects.filter(
            asset=key.asset, payer=key.payer, nonce=key.nonce)

    def reserve(self, key, network='', resource='', value=0):
        for _ in range(2):
            try:
                with transaction.atomic():
                    PaymentAuthorization.objects.create(
                        asset=key.asset,
                        payer=key.payer,
                        nonce=key.nonce,
                        network=network,
                        resource=resource,
                        value=str(value),
                    )
                return Reservation(ReservationStatus.GRANTED)
            except IntegrityError:
                logger.info('Authorization nonce {} already recorded', key.nonce)

            existing = self._records(key).first()
            if existing is None:
                # Released between our insert and read; try once more.
                continue
            if existing.status == PaymentAuthorization.Status.CONSUMED:
                return Reservation(ReservationStatus.ALREADY_CONSUMED)
            if existing.status == PaymentAuthorization.Status.PENDING:
                claimed = self._records(key).filter(
                    status=PaymentAuthorization.Status.PENDING,
                ).update(
                    status=PaymentAuthorization.Status.RESERVED,
                    reserved_at=timezone.now(),
                )
                if claimed:
                    return Reservation(ReservationStatus.RESUMED, existing.transaction_hash)
            return Reservation(ReservationStatus.ALREADY_RESERVED)
        return Reservation(ReservationStatus.ALREADY_RESERVED)

    def commit(self, key, result):
        with transaction.atomic():
            record = self._records(key).select_for_update().filter(
                status=PaymentAuthorization.Status.RESERVED).first()
            if record is None:
                return False
            record.mark_settled(result.transaction_hash, result.block_confirmations)
            record.save(update_fields=[
                'status', 'transaction_hash', 'block_confirmations', 'settled_at', 'updated_at'])
        return True

    def release(self, key):
        deleted, _ = self._records(key).filter(
            status=PaymentAuthorization.Status.RESERVED).delete()
        return deleted > 0

    def suspend(self, key, transaction_hash):
        updated = self._records(key).filter(
            status=PaymentAuthorization.Status.RESERVED,
        ).update(
            status=PaymentAuthorization.Status.PENDING,
            transaction_hash=transaction_hash,
        )
        return updated > 0

    def state(self, key):
        record = self._records(key).first()
        return record.status if record else None

    def consume_transaction(self, payment, network='', resource=''):
        try:
            with transaction.atomic():
                ConsumedTransaction.objects.create(
                    transaction_hash=payment.transaction_hash.lower(),
                    network=network,
                    from_address=payment.from_address,
                    to_address=payment.to_address or '',
                    value_wei=str(payment.value_wei),
                    block_number=payment.block_number or 0,
                    confirmations=payment.confirmations,
                    resource=resource,
                )
        except IntegrityError:
            logger.info('Native payment {} already redeemed', payment.transaction_hash)
            return False
        return True

    def is_transaction_consumed(self, transaction_hash):
        return ConsumedTransaction.objects.filter(
            transaction_hash=transaction_hash.lower()).exists()

    def record_rejection(self, rejection):
        RejectedPayment.objects.create(
            resource=rejection.resource,
            network=rejection.network,
            scheme=rejection.scheme,
            reason=rejection.reason,
            message=rejection.message,
            status_code=rejection.status_code,
            payer=(rejection.payer or '').lower(),
            nonce=rejection.nonce or '',
            transaction_hash=rejection.transaction_hash or '',
        )


_ledgers: Dict[str, NonceLedger] = {}
_ledgers_lock = threading.Lock()


def get_nonce_ledger(path: Optional[str] = None) -> NonceLedger:
    """Return the process-wide ledger configured by ``X402_NONCE_LEDGER``."""
    path = path or getattr(settings, 'X402_NONCE_LEDGER', 'x402gate.ledger.DatabaseNonceLedger')
    with _ledgers_lock:
        ledger = _ledgers.get(path)
        if ledger is None:
            ledger = import_string(path)()
            _ledgers[path] = ledger
        return ledger
