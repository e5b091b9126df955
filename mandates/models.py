from django.db import models
from django.db.models import Q


class Organisation(models.Model):
    """Tenant record. Owned by the billing application; the engine only reads it
    and moves `end_date` forward when a recurring debit succeeds."""

    name = models.CharField(max_length=255)
    end_date = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Subscription end date; advanced one calendar month per successful debit",
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]

    def __str__(self):
        return f"Organisation({self.pk}, {self.name})"


class ImmutableRecordError(Exception):
    """Raised on an attempt to change or delete an append-only history row."""


class MandateHistoryEntry(models.Model):
    """
    Append-only log of every bank interaction outcome.

    One row per (merchant_tran_id, status). Rows are never updated or deleted;
    they serve as the audit trail and as the duplicate-detection key for
    webhook deliveries.
    """

    STATUS_CHOICES = [
        ("INITIATED", "Initiated"),
        ("ACTIVATED", "Activated"),
        ("SUCCESS", "Success"),
        ("FAILED", "Failed"),
    ]

    organisation = models.ForeignKey(
        Organisation,
        on_delete=models.PROTECT,
        related_name="mandate_history",
    )
    merchant_tran_id = models.CharField(
        max_length=64,
        db_index=True,
        help_text="Caller-generated id, unique per bank attempt",
    )
    bank_reference_id = models.CharField(
        max_length=64,
        null=True,
        blank=True,
        help_text="BankRRN assigned by the bank",
    )
    unified_mandate_number = models.CharField(
        max_length=128,
        null=True,
        blank=True,
        help_text="UMN, assigned by the bank once the payer approves",
    )
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES)

    payer_address = models.CharField(max_length=255, blank=True)
    payer_name = models.CharField(max_length=255, blank=True)
    payer_mobile = models.CharField(max_length=20, blank=True)

    initiated_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    response_code = models.CharField(max_length=32, null=True, blank=True)
    response_description = models.CharField(max_length=500, null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        verbose_name = "Mandate history entry"
        verbose_name_plural = "Mandate history"
        constraints = [
            models.UniqueConstraint(
                fields=["merchant_tran_id", "status"],
                name="uniq_history_tran_status",
            ),
        ]
        indexes = [
            models.Index(fields=["organisation", "-created_at"], name="mandate_hist_org_created_idx"),
        ]

    def __str__(self):
        return f"MandateHistoryEntry({self.merchant_tran_id}, {self.status})"

    def save(self, *args, **kwargs):
        if self.pk is not None and not self._state.adding:
            raise ImmutableRecordError("Mandate history entries cannot be modified")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRecordError("Mandate history entries cannot be deleted")


class ActiveMandate(models.Model):
    """
    Current standing-instruction state for a tenant.

    At most one row per organisation. Mutated only by the lifecycle controller.

    sequence_number counts recurring-charge attempts and only moves forward:
    on a successful execution, or when the execution retry budget runs out.
    """

    STATUS_CHOICES = [
        ("INITIATED", "Initiated"),
        ("ACTIVATED", "Activated"),
        ("SUSPENDED", "Suspended"),
    ]

    MAX_EXECUTION_RETRIES = 9
    MAX_NOTIFICATION_RETRIES = 3

    organisation = models.OneToOneField(
        Organisation,
        on_delete=models.PROTECT,
        related_name="active_mandate",
    )
    unified_mandate_number = models.CharField(max_length=128, blank=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(
        max_length=10,
        choices=STATUS_CHOICES,
        default="INITIATED",
        db_index=True,
    )
    sequence_number = models.PositiveIntegerField(default=1)

    payer_address = models.CharField(max_length=255, blank=True)
    payer_name = models.CharField(max_length=255, blank=True)
    payer_mobile = models.CharField(max_length=20, blank=True)

    # Notification cycle
    notified = models.BooleanField(default=False)
    notification_retry_count = models.PositiveSmallIntegerField(default=0)
    last_notification_attempt_at = models.DateTimeField(null=True, blank=True)

    # Execution cycle
    execution_retry_count = models.PositiveSmallIntegerField(default=0)
    last_execution_attempt_at = models.DateTimeField(null=True, blank=True)

    registration_tran_id = models.CharField(
        max_length=64,
        blank=True,
        help_text="merchantTranId of the registration callback that last upserted this row",
    )
    lease_expires_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Set while a bank call for this mandate is in flight",
    )
    lease_token = models.CharField(
        max_length=32,
        blank=True,
        help_text="Identifies the scheduler pass holding the lease; outcome writes require it",
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Active mandate"
        verbose_name_plural = "Active mandates"
        constraints = [
            models.CheckConstraint(
                condition=Q(execution_retry_count__lte=9),
                name="active_mandate_execution_retry_bound",
            ),
            models.CheckConstraint(
                condition=Q(notification_retry_count__lte=3),
                name="active_mandate_notification_retry_bound",
            ),
        ]

    def __str__(self):
        return f"ActiveMandate({self.organisation_id}, {self.status}, seq={self.sequence_number})"


class WebhookEvent(models.Model):
    """Raw bank callbacks, stored before processing for audit and debugging"""
    PROVIDER_CHOICES = [
        ("icici", "ICICI UPI"),
    ]

    provider = models.CharField(max_length=50, choices=PROVIDER_CHOICES, default="icici")
    payload = models.JSONField()  # Body exactly as received (encrypted or clear)
    merchant_tran_id = models.CharField(max_length=64, blank=True, db_index=True)
    processed = models.BooleanField(default=False)
    error = models.TextField(blank=True)  # Error message if processing failed
    received_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-received_at"]

    def __str__(self):
        return f"WebhookEvent({self.provider}, {self.merchant_tran_id}, {self.processed})"
