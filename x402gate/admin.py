from django.contrib import admin

from x402gate.models import ConsumedTransaction, PaymentAuthorization, RejectedPayment


@admin.register(PaymentAuthorization)
class PaymentAuthorizationAdmin(admin.ModelAdmin):
    list_display = ("nonce", "payer", "asset", "status", "resource", "transaction_hash", "created_at")
    list_filter = ("status", "network")
    search_fields = ("nonce", "payer", "transaction_hash")


@admin.register(ConsumedTransaction)
class ConsumedTransactionAdmin(admin.ModelAdmin):
    list_display = ("transaction_hash", "from_address", "value_wei", "network", "resource", "created_at")
    list_filter = ("network",)
    search_fields = ("transaction_hash", "from_address")


@admin.register(RejectedPayment)
class RejectedPaymentAdmin(admin.ModelAdmin):
    list_display = ("reason", "resource", "payer", "nonce", "transaction_hash", "status_code", "created_at")
    list_filter = ("reason", "scheme", "network")
    search_fields = ("payer", "nonce", "transaction_hash")
