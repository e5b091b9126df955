from decimal import Decimal

from rest_framework import serializers

from .models import ActiveMandate, MandateHistoryEntry, Organisation


class MandateCreateSerializer(serializers.Serializer):
    """Register a recurring mandate for a tenant.

    Inputs:
      - organisation_id: tenant the mandate debits for
      - payer_va: payer's UPI virtual address (name@handle)
      - amount: optional monthly amount; engine default when omitted
    """

    organisation_id = serializers.PrimaryKeyRelatedField(
        queryset=Organisation.objects.all(),
        source="organisation",
    )
    payer_va = serializers.CharField(max_length=255)
    amount = serializers.DecimalField(
        max_digits=12,
        decimal_places=2,
        min_value=Decimal("1.00"),
        required=False,
    )

    def validate_payer_va(self, value):
        value = value.strip()
        handle, sep, provider = value.partition("@")
        if not sep or not handle or not provider:
            raise serializers.ValidationError("Enter a valid UPI address, e.g. name@bank.")
        return value


class BankCallbackSerializer(serializers.Serializer):
    """Decrypted bank callback. Only merchantTranId is required; the rest is recorded when present."""

    merchantTranId = serializers.CharField(max_length=64)
    TxnStatus = serializers.CharField(required=False, allow_blank=True)
    ResponseCode = serializers.CharField(required=False, allow_blank=True)
    RespCodeDescription = serializers.CharField(required=False, allow_blank=True)
    UMN = serializers.CharField(required=False, allow_blank=True)
    BankRRN = serializers.CharField(required=False, allow_blank=True)
    PayerVA = serializers.CharField(required=False, allow_blank=True)
    PayerName = serializers.CharField(required=False, allow_blank=True)
    PayerMobile = serializers.CharField(required=False, allow_blank=True)
    PayerAmount = serializers.CharField(required=False, allow_blank=True)
    TxnInitDate = serializers.CharField(required=False, allow_blank=True)
    TxnCompletionDate = serializers.CharField(required=False, allow_blank=True)
    subMerchantId = serializers.CharField(required=False, allow_blank=True)
    merchantId = serializers.CharField(required=False, allow_blank=True)
    terminalId = serializers.CharField(required=False, allow_blank=True)


class MandateHistorySerializer(serializers.ModelSerializer):
    class Meta:
        model = MandateHistoryEntry
        fields = (
            "id",
            "merchant_tran_id",
            "bank_reference_id",
            "unified_mandate_number",
            "amount",
            "status",
            "payer_address",
            "payer_name",
            "initiated_at",
            "completed_at",
            "response_code",
            "response_description",
            "created_at",
        )
        read_only_fields = fields


class ActiveMandateSerializer(serializers.ModelSerializer):
    """Current mandate state. Payer mobile is left out."""

    class Meta:
        model = ActiveMandate
        fields = (
            "unified_mandate_number",
            "amount",
            "status",
            "sequence_number",
            "payer_address",
            "payer_name",
            "notified",
            "notification_retry_count",
            "last_notification_attempt_at",
            "execution_retry_count",
            "last_execution_attempt_at",
            "created_at",
            "updated_at",
        )
        read_only_fields = fields
