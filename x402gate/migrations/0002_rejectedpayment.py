from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("x402gate", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="RejectedPayment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("resource", models.CharField(max_length=255)),
                ("network", models.CharField(blank=True, default="", max_length=64)),
                ("scheme", models.CharField(blank=True, default="", max_length=32)),
                ("reason", models.CharField(max_length=64)),
                ("message", models.TextField(blank=True, default="")),
                ("status_code", models.PositiveSmallIntegerField(default=402)),
                ("payer", models.CharField(blank=True, default="", max_length=42)),
                ("nonce", models.CharField(blank=True, default="", max_length=66)),
                ("transaction_hash", models.CharField(blank=True, default="", max_length=66)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["reason", "created_at"], name="rejected_reason_created"),
                ],
            },
        ),
    ]
