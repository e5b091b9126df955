import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Organisation",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=255)),
                ("end_date", models.DateTimeField(blank=True, null=True, help_text="Subscription end date; advanced one calendar month per successful debit")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["name"],
            },
        ),
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("provider", models.CharField(choices=[("icici", "ICICI UPI")], default="icici", max_length=50)),
                ("payload", models.JSONField()),
                ("merchant_tran_id", models.CharField(blank=True, db_index=True, max_length=64)),
                ("processed", models.BooleanField(default=False)),
                ("error", models.TextField(blank=True)),
                ("received_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "ordering": ["-received_at"],
            },
        ),
        migrations.CreateModel(
            name="MandateHistoryEntry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("merchant_tran_id", models.CharField(db_index=True, help_text="Caller-generated id, unique per bank attempt", max_length=64)),
                ("bank_reference_id", models.CharField(blank=True, help_text="BankRRN assigned by the bank", max_length=64, null=True)),
                ("unified_mandate_number", models.CharField(blank=True, help_text="UMN, assigned by the bank once the payer approves", max_length=128, null=True)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("status", models.CharField(choices=[("INITIATED", "Initiated"), ("ACTIVATED", "Activated"), ("SUCCESS", "Success"), ("FAILED", "Failed")], max_length=10)),
                ("payer_address", models.CharField(blank=True, max_length=255)),
                ("payer_name", models.CharField(blank=True, max_length=255)),
                ("payer_mobile", models.CharField(blank=True, max_length=20)),
                ("initiated_at", models.DateTimeField(blank=True, null=True)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("response_code", models.CharField(blank=True, max_length=32, null=True)),
                ("response_description", models.CharField(blank=True, max_length=500, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True)),
                ("organisation", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="mandate_history", to="mandates.organisation")),
            ],
            options={
                "verbose_name": "Mandate history entry",
                "verbose_name_plural": "Mandate history",
                "ordering": ["-created_at", "-id"],
                "indexes": [models.Index(fields=["organisation", "-created_at"], name="mandate_hist_org_created_idx")],
                "constraints": [models.UniqueConstraint(fields=("merchant_tran_id", "status"), name="uniq_history_tran_status")],
            },
        ),
        migrations.CreateModel(
            name="ActiveMandate",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("unified_mandate_number", models.CharField(blank=True, max_length=128)),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("status", models.CharField(choices=[("INITIATED", "Initiated"), ("ACTIVATED", "Activated"), ("SUSPENDED", "Suspended")], db_index=True, default="INITIATED", max_length=10)),
                ("sequence_number", models.PositiveIntegerField(default=1)),
                ("payer_address", models.CharField(blank=True, max_length=255)),
                ("payer_name", models.CharField(blank=True, max_length=255)),
                ("payer_mobile", models.CharField(blank=True, max_length=20)),
                ("notified", models.BooleanField(default=False)),
                ("notification_retry_count", models.PositiveSmallIntegerField(default=0)),
                ("last_notification_attempt_at", models.DateTimeField(blank=True, null=True)),
                ("execution_retry_count", models.PositiveSmallIntegerField(default=0)),
                ("last_execution_attempt_at", models.DateTimeField(blank=True, null=True)),
                ("registration_tran_id", models.CharField(blank=True, help_text="merchantTranId of the registration callback that last upserted this row", max_length=64)),
                ("lease_expires_at", models.DateTimeField(blank=True, help_text="Set while a bank call for this mandate is in flight", null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("organisation", models.OneToOneField(on_delete=django.db.models.deletion.PROTECT, related_name="active_mandate", to="mandates.organisation")),
            ],
            options={
                "verbose_name": "Active mandate",
                "verbose_name_plural": "Active mandates",
                "ordering": ["-created_at"],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("execution_retry_count__lte", 9)), name="active_mandate_execution_retry_bound"),
                    models.CheckConstraint(condition=models.Q(("notification_retry_count__lte", 3)), name="active_mandate_notification_retry_bound"),
                ],
            },
        ),
    ]
