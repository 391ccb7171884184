from django.db import models
from django.utils import timezone


class PaymentAuthorization(models.Model):
    class Status(models.TextChoices):
        RESERVED = 'reserved', 'Reserved'
        PENDING = 'pending', 'Pending'
        CONSUMED = 'consumed', 'Consumed'

    # Ledger key. Released reservations are deleted, so a row exists only while
    # the nonce is reserved, awaiting a receipt, or spent.
    asset = models.CharField(max_length=42)
    payer = models.CharField(max_length=42)
    nonce = models.CharField(max_length=66)

    status = models.CharField(
        max_length=16,
        choices=Status.choices,
        default=Status.RESERVED,
    )
    network = models.CharField(max_length=64, blank=True, default='')
    resource = models.CharField(max_length=255, blank=True, default='')
    value = models.CharField(max_length=78, blank=True, default='')
    transaction_hash = models.CharField(max_length=66, blank=True, null=True)
    block_confirmations = models.PositiveIntegerField(default=0)
    reserved_at = models.DateTimeField(default=timezone.now)
    settled_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['asset', 'payer', 'nonce'],
                name='unique_authorization_nonce',
            ),
        ]

    def mark_settled(self, tx_hash: str, confirmations: int = 0) -> None:
        self.status = self.Status.CONSUMED
        self.transaction_hash = tx_hash
        self.block_confirmations = confirmations
        self.settled_at = timezone.now()


class ConsumedTransaction(models.Model):
    """A native-asset transfer hash that has already been redeemed for access."""

    transaction_hash = models.CharField(max_length=66, unique=True)
    network = models.CharField(max_length=64, blank=True, default='')
    from_address = models.CharField(max_length=42)
    to_address = models.CharField(max_length=42)
    value_wei = models.CharField(max_length=78)
    block_number = models.PositiveBigIntegerField()
    confirmations = models.PositiveIntegerField(default=0)
    resource = models.CharField(max_length=255, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']


class RejectedPayment(models.Model):
    """A payment attempt that did not grant access, kept for auditing."""

    resource = models.CharField(max_length=255)
    network = models.CharField(max_length=64, blank=True, default='')
    scheme = models.CharField(max_length=32, blank=True, default='')
    reason = models.CharField(max_length=64)
    message = models.TextField(blank=True, default='')
    status_code = models.PositiveSmallIntegerField(default=402)
    payer = models.CharField(max_length=42, blank=True, default='')
    nonce = models.CharField(max_length=66, blank=True, default='')
    transaction_hash = models.CharField(max_length=66, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['reason', 'created_at'], name='rejected_reason_created'),
        ]
