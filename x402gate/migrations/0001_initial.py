import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="PaymentAuthorization",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("asset", models.CharField(max_length=42)),
                ("payer", models.CharField(max_length=42)),
                ("nonce", models.CharField(max_length=66)),
                (
                    "status",
                    models.CharField(
                        choices=[("reserved", "Reserved"), ("pending", "Pending"), ("consumed", "Consumed")],
                        default="reserved",
                        max_length=16,
                    ),
                ),
                ("network", models.CharField(blank=True, default="", max_length=64)),
                ("resource", models.CharField(blank=True, default="", max_length=255)),
                ("value", models.CharField(blank=True, default="", max_length=78)),
                ("transaction_hash", models.CharField(blank=True, max_length=66, null=True)),
                ("block_confirmations", models.PositiveIntegerField(default=0)),
                ("reserved_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("settled_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
        migrations.AddConstraint(
            model_name="paymentauthorization",
            constraint=models.UniqueConstraint(fields=("asset", "payer", "nonce"), name="unique_authorization_nonce"),
        ),
        migrations.CreateModel(
            name="ConsumedTransaction",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("transaction_hash", models.CharField(max_length=66, unique=True)),
                ("network", models.CharField(blank=True, default="", max_length=64)),
                ("from_address", models.CharField(max_length=42)),
                ("to_address", models.CharField(max_length=42)),
                ("value_wei", models.CharField(max_length=78)),
                ("block_number", models.PositiveBigIntegerField()),
                ("confirmations", models.PositiveIntegerField(default=0)),
                ("resource", models.CharField(blank=True, default="", max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
    ]
