import threading
from unittest.mock import patch

from django.db import IntegrityError, connection
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings, skipUnlessDBFeature

from x402gate.chain_handlers import SettlementResult, SettlementStatus
from x402gate.ledger import (
    DatabaseNonceLedger,
    MemoryNonceLedger,
    NonceKey,
    Rejection,
    ReservationStatus,
    get_nonce_ledger,
)
from x402gate.models import ConsumedTransaction, PaymentAuthorization, RejectedPayment
from x402gate.test_utils import ASSET, PAYER, RESOURCE, SETTLEMENT_TX, make_authorization, native_payment


def settled(tx_hash=SETTLEMENT_TX):
    return SettlementResult(status=SettlementStatus.SUCCESS, transaction_hash=tx_hash, block_confirmations=2)


class LedgerContractMixin:
    """Behaviour every ledger backend must share."""

    def make_ledger(self):
        raise NotImplementedError

    def setUp(self) -> None:
        self.ledger = self.make_ledger()
        self.key = NonceKey.for_authorization(ASSET, make_authorization())

    def test_key_is_case_insensitive(self):
        authorization = make_authorization()
        upper = NonceKey.for_authorization(ASSET.upper().replace('0X', '0x'), authorization)
        lower = NonceKey.for_authorization(ASSET.lower(), authorization)

        self.assertEqual(upper, lower)

    def test_first_reservation_is_granted(self):
        reservation = self.ledger.reserve(self.key)

        self.assertEqual(reservation.status, ReservationStatus.GRANTED)
        self.assertTrue(reservation.acquired)
        self.assertEqual(self.ledger.state(self.key), 'reserved')

    def test_reserved_nonce_cannot_be_reserved_again(self):
        self.ledger.reserve(self.key)

        reservation = self.ledger.reserve(self.key)

        self.assertEqual(reservation.status, ReservationStatus.ALREADY_RESERVED)
        self.assertFalse(reservation.acquired)

    def test_committed_nonce_is_consumed_forever(self):
        self.ledger.reserve(self.key)

        self.assertTrue(self.ledger.commit(self.key, settled()))
        self.assertEqual(self.ledger.state(self.key), 'consumed')
        self.assertEqual(self.ledger.reserve(self.key).status, ReservationStatus.ALREADY_CONSUMED)
        self.assertFalse(self.ledger.release(self.key))
        self.assertFalse(self.ledger.commit(self.key, settled()))

    def test_commit_requires_reservation(self):
        self.assertFalse(self.ledger.commit(self.key, settled()))
        self.assertIsNone(self.ledger.state(self.key))

    def test_released_nonce_can_be_reserved_again(self):
        self.ledger.reserve(self.key)

        self.assertTrue(self.ledger.release(self.key))
        self.assertIsNone(self.ledger.state(self.key))
        self.assertEqual(self.ledger.reserve(self.key).status, ReservationStatus.GRANTED)

    def test_suspended_nonce_resumes_once(self):
        self.ledger.reserve(self.key)
        self.assertTrue(self.ledger.suspend(self.key, SETTLEMENT_TX))
        self.assertEqual(self.ledger.state(self.key), 'pending')

        resumed = self.ledger.reserve(self.key)
        again = self.ledger.reserve(self.key)

        self.assertEqual(resumed.status, ReservationStatus.RESUMED)
        self.assertEqual(resumed.transaction_hash, SETTLEMENT_TX)
        self.assertTrue(resumed.acquired)
        self.assertEqual(again.status, ReservationStatus.ALREADY_RESERVED)

    def test_transaction_hash_is_consumed_once(self):
        tx_hash = '0x' + 'ef' * 32
        payment = native_payment(tx_hash)

        self.assertFalse(self.ledger.is_transaction_consumed(tx_hash))
        self.assertTrue(self.ledger.consume_transaction(payment, network='avalanche-fuji'))
        self.assertFalse(self.ledger.consume_transaction(payment, network='avalanche-fuji'))
        self.assertTrue(self.ledger.is_transaction_consumed(tx_hash.upper().replace('0X', '0x')))


class MemoryNonceLedgerTests(LedgerContractMixin, SimpleTestCase):
    def make_ledger(self):
        return MemoryNonceLedger()

    def test_rejection_is_kept(self):
        rejection = Rejection(resource=RESOURCE, reason='invalid_signature', message='Signature mismatch')

        self.ledger.record_rejection(rejection)

        self.assertEqual(self.ledger.rejections, [rejection])


class DatabaseNonceLedgerTests(LedgerContractMixin, TestCase):
    def make_ledger(self):
        return DatabaseNonceLedger()

    def test_reservation_records_payment_attempt(self):
        self.ledger.reserve(self.key, network='avalanche-fuji', resource='/agent/premium-data', value=50000)
        self.ledger.commit(self.key, settled())

        record = PaymentAuthorization.objects.get()
        self.assertEqual(record.status, PaymentAuthorization.Status.CONSUMED)
        self.assertEqual(record.resource, '/agent/premium-data')
        self.assertEqual(record.value, '50000')
        self.assertEqual(record.transaction_hash, SETTLEMENT_TX)
        self.assertEqual(record.block_confirmations, 2)
        self.assertIsNotNone(record.settled_at)

    def test_release_deletes_row(self):
        self.ledger.reserve(self.key)
        self.ledger.release(self.key)

        self.assertFalse(PaymentAuthorization.objects.exists())

    def test_consumed_transaction_is_recorded(self):
        tx_hash = '0x' + 'ef' * 32
        self.ledger.consume_transaction(native_payment(tx_hash), network='avalanche-fuji', resource='/agent/premium-data')

        record = ConsumedTransaction.objects.get()
        self.assertEqual(record.transaction_hash, tx_hash)
        self.assertEqual(record.block_number, 100)
        self.assertEqual(record.resource, '/agent/premium-data')

    def test_rejection_is_recorded(self):
        self.ledger.record_rejection(Rejection(
            resource=RESOURCE,
            reason='settlement_failed',
            message='Settlement transaction reverted on-chain',
            network='avalanche-fuji',
            scheme='exact',
            payer=PAYER.address,
            nonce=self.key.nonce,
            transaction_hash=SETTLEMENT_TX,
        ))

        record = RejectedPayment.objects.get()
        self.assertEqual(record.reason, 'settlement_failed')
        self.assertEqual(record.message, 'Settlement transaction reverted on-chain')
        self.assertEqual(record.payer, PAYER.address.lower())
        self.assertEqual(record.nonce, self.key.nonce)
        self.assertEqual(record.transaction_hash, SETTLEMENT_TX)
        self.assertEqual(record.status_code, 402)

    def racing_inserts(self, losses):
        """Make the first ``losses`` inserts fail as if another request got there first."""
        real_create = PaymentAuthorization.objects.create
        attempts = []

        def create(**kwargs):
            attempts.append(kwargs)
            if len(attempts) <= losses:
                raise IntegrityError('duplicate key value violates unique constraint')
            return real_create(**kwargs)

        return patch.object(PaymentAuthorization.objects, 'create', side_effect=create), attempts

    def test_insert_lost_to_a_released_row_is_retried(self):
        racing, attempts = self.racing_inserts(losses=1)

        with racing:
            reservation = self.ledger.reserve(self.key)

        self.assertEqual(reservation.status, ReservationStatus.GRANTED)
        self.assertEqual(len(attempts), 2)
        self.assertEqual(self.ledger.state(self.key), 'reserved')

    def test_insert_that_keeps_losing_gives_up(self):
        racing, attempts = self.racing_inserts(losses=2)

        with racing:
            reservation = self.ledger.reserve(self.key)

        self.assertEqual(reservation.status, ReservationStatus.ALREADY_RESERVED)
        self.assertEqual(len(attempts), 2)
        self.assertFalse(PaymentAuthorization.objects.exists())

    def test_pending_claim_lost_to_another_request(self):
        self.ledger.reserve(self.key)
        self.ledger.suspend(self.key, SETTLEMENT_TX)
        real_records = self.ledger._records
        lookups = []

        def records(key):
            lookups.append(key)
            if len(lookups) == 2:
                # Another request resumes the nonce between our read and our claim.
                PaymentAuthorization.objects.filter(nonce=key.nonce).update(
                    status=PaymentAuthorization.Status.RESERVED)
            return real_records(key)

        with patch.object(self.ledger, '_records', side_effect=records):
            reservation = self.ledger.reserve(self.key)

        self.assertEqual(reservation.status, ReservationStatus.ALREADY_RESERVED)
        self.assertEqual(len(lookups), 2)


@skipUnlessDBFeature('test_db_allows_multiple_connections')
class DatabaseNonceLedgerConcurrencyTests(TransactionTestCase):
    workers = 8

    def setUp(self) -> None:
        self.ledger = DatabaseNonceLedger()
        self.key = NonceKey.for_authorization(ASSET, make_authorization())

    def reserve_concurrently(self):
        barrier = threading.Barrier(self.workers)
        statuses = []
        statuses_lock = threading.Lock()

        def attempt():
            try:
                barrier.wait()
                status = self.ledger.reserve(self.key).status
                with statuses_lock:
                    statuses.append(status)
            finally:
                connection.close()

        threads = [threading.Thread(target=attempt) for _ in range(self.workers)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return statuses

    def test_one_concurrent_reservation_is_granted(self):
        statuses = self.reserve_concurrently()

        self.assertEqual(len(statuses), self.workers)
        self.assertEqual(statuses.count(ReservationStatus.GRANTED), 1)
        self.assertEqual(set(statuses) - {ReservationStatus.GRANTED}, {ReservationStatus.ALREADY_RESERVED})
        self.assertEqual(PaymentAuthorization.objects.count(), 1)

    def test_one_concurrent_claim_resumes_pending_nonce(self):
        self.ledger.reserve(self.key)
        self.ledger.suspend(self.key, SETTLEMENT_TX)

        statuses = self.reserve_concurrently()

        self.assertEqual(statuses.count(ReservationStatus.RESUMED), 1)
        self.assertEqual(set(statuses) - {ReservationStatus.RESUMED}, {ReservationStatus.ALREADY_RESERVED})
        self.assertEqual(self.ledger.state(self.key), 'reserved')


class LedgerLookupTests(SimpleTestCase):
    @override_settings(X402_NONCE_LEDGER='x402gate.ledger.MemoryNonceLedger')
    def test_configured_ledger_is_shared(self):
        first = get_nonce_ledger()
        second = get_nonce_ledger()

        self.assertIsInstance(first, MemoryNonceLedger)
        self.assertIs(first, second)
