import hmac
import logging

from django.conf import settings
from django.shortcuts import get_object_or_404
from rest_framework import status
from rest_framework.permissions import AllowAny, BasePermission, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from .bank_client import BankApiError, BankBusinessError
from .envelope import DecryptionError, EnvelopeError, get_envelope
from .lifecycle import MandateLifecycle, MandateStateError, NotFoundError, PersistenceError
from .models import MandateHistoryEntry, Organisation, WebhookEvent
from .serializers import (
    ActiveMandateSerializer,
    BankCallbackSerializer,
    MandateCreateSerializer,
    MandateHistorySerializer,
)

logger = logging.getLogger(__name__)


class HasSchedulerToken(BasePermission):
    """Cron/scheduler calls carry the shared token in the X-Scheduler-Token header."""

    message = "Missing or invalid scheduler token."

    def has_permission(self, request, view):
        expected = (getattr(settings, "MANDATE_ENGINE", None) or {}).get("SCHEDULER_TOKEN") or ""
        supplied = request.headers.get("X-Scheduler-Token") or ""
        if not expected:
            return False
        return hmac.compare_digest(supplied.encode(), expected.encode())


class MandateCreateView(APIView):
    """POST /api/mandates/ - register a recurring mandate with the bank

    Flow:
    1. Validate organisation and payer address with MandateCreateSerializer
    2. MandateLifecycle.create_mandate calls CreateMandate and records history(INITIATED)
    3. Return 201 with the merchantTranId; activation arrives later via the bank callback
    """
    permission_classes = (IsAuthenticated,)

    def post(self, request):
        serializer = MandateCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        organisation = serializer.validated_data["organisation"]
        payer_va = serializer.validated_data["payer_va"]
        amount = serializer.validated_data.get("amount")

        lifecycle = MandateLifecycle.from_settings()
        try:
            entry = lifecycle.create_mandate(organisation, payer_va, amount)
        except MandateStateError as e:
            return Response({"error": str(e)}, status=status.HTTP_400_BAD_REQUEST)
        except (BankApiError, BankBusinessError) as e:
            return Response(
                {"message": "Failed to register mandate with bank", "details": str(e)},
                status=status.HTTP_502_BAD_GATEWAY,
            )
        except EnvelopeError as e:
            logger.error("Mandate key material error: %s", e)
            return Response({"error": "Mandate encryption is misconfigured"}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)
        except PersistenceError as e:
            return Response({"error": str(e)}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)

        organisation.refresh_from_db()
        return Response(
            {
                "organisation_id": organisation.pk,
                "merchant_tran_id": entry.merchant_tran_id,
                "bank_reference_id": entry.bank_reference_id,
                "status": entry.status,
                "end_date": organisation.end_date,
            },
            status=status.HTTP_201_CREATED,
        )


class MandateDetailView(APIView):
    """GET /api/mandates/<organisation_id>/ - current mandate, subscription end date and history"""
    permission_classes = (IsAuthenticated,)

    def get(self, request, organisation_id):
        organisation = get_object_or_404(Organisation, pk=organisation_id)
        mandate = getattr(organisation, "active_mandate", None)
        history = MandateHistoryEntry.objects.filter(organisation=organisation)

        return Response(
            {
                "organisation_id": organisation.pk,
                "end_date": organisation.end_date,
                "mandate": ActiveMandateSerializer(mandate).data if mandate else None,
                "history": MandateHistorySerializer(history, many=True).data,
            },
            status=status.HTTP_200_OK,
        )


class BankCallbackView(APIView):
    """POST /api/mandates/callback/ - bank notifications for registration and execution

    The body is either the callback itself or an envelope
    {encryptedData, encryptedKey, iv}. The raw body is stored as a
    WebhookEvent before anything else happens.
    """
    permission_classes = (AllowAny,)
    authentication_classes = ()

    def post(self, request):
        body = request.data
        if not isinstance(body, dict):
            return Response({"error": "Callback body must be a JSON object"}, status=status.HTTP_400_BAD_REQUEST)

        event = WebhookEvent.objects.create(
            payload=body,
            merchant_tran_id=str(body.get("merchantTranId") or "")[:64],
        )

        try:
            data = self._open(body)
        except DecryptionError as e:
            logger.warning("Callback %s could not be decrypted: %s", event.pk, e)
            self._mark(event, error=str(e))
            return Response({"error": "Invalid encrypted payload"}, status=status.HTTP_400_BAD_REQUEST)
        except EnvelopeError as e:
            logger.error("Mandate key material error: %s", e)
            self._mark(event, error=str(e))
            return Response({"error": "Mandate encryption is misconfigured"}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)

        serializer = BankCallbackSerializer(data=data)
        if not serializer.is_valid():
            self._mark(event, error=str(serializer.errors))
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)

        merchant_tran_id = serializer.validated_data["merchantTranId"]
        if event.merchant_tran_id != merchant_tran_id:
            event.merchant_tran_id = merchant_tran_id
            event.save(update_fields=["merchant_tran_id"])

        try:
            outcome = MandateLifecycle.from_settings().handle_callback(dict(serializer.validated_data))
        except NotFoundError as e:
            logger.info("Callback for unknown merchantTranId %s ignored", merchant_tran_id)
            self._mark(event, processed=True, error=str(e))
            return Response({"status": "ignored"}, status=status.HTTP_200_OK)
        except EnvelopeError as e:
            logger.error("Mandate key material error while handling %s: %s", merchant_tran_id, e)
            self._mark(event, error=str(e))
            return Response({"error": "Mandate encryption is misconfigured"}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)
        except PersistenceError as e:
            self._mark(event, error=str(e))
            return Response({"error": "Callback could not be stored"}, status=status.HTTP_500_INTERNAL_SERVER_ERROR)

        self._mark(event, processed=True)
        return Response({"status": "received", "webhook_id": event.pk, **outcome}, status=status.HTTP_200_OK)

    def _open(self, body):
        if not body.get("encryptedData"):
            return body
        data = get_envelope().decrypt(body.get("encryptedData"), body.get("encryptedKey"), body.get("iv"))
        if not isinstance(data, dict):
            raise DecryptionError("Decrypted callback is not a JSON object")
        return data

    def _mark(self, event, processed=False, error=""):
        event.processed = processed
        event.error = error
        event.save(update_fields=["processed", "error"])


class SchedulerView(APIView):
    """Base for the cron-triggered batch endpoints. Always 200 unless key material is broken."""
    permission_classes = (HasSchedulerToken,)
    authentication_classes = ()

    def run(self, lifecycle):
        raise NotImplementedError

    def post(self, request):
        try:
            result = self.run(MandateLifecycle.from_settings())
        except EnvelopeError as e:
            logger.error("Mandate key material error during scheduled run: %s", e)
            return Response(
                {"success": False, "error": "Mandate encryption is misconfigured"},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        return Response(result.as_dict(), status=status.HTTP_200_OK)


class ExecuteMandatesView(SchedulerView):
    """POST /api/mandates/execute/ - debit every due mandate"""

    def run(self, lifecycle):
        return lifecycle.run_due_executions()


class NotifyMandatesView(SchedulerView):
    """POST /api/mandates/notify/ - send pre-debit notifications"""

    def run(self, lifecycle):
        return lifecycle.run_due_notifications()
