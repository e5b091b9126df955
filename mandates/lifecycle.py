"""
Mandate lifecycle controller.

Drives a tenant's standing instruction through
    (none) -> INITIATED -> ACTIVATED
and runs the two scheduler entry points:

- run_due_notifications(): pre-debit reminders for mandates whose tenant
  end date falls inside the notification window
- run_due_executions(): the recurring debit itself, plus retries of a
  first charge that failed at activation time

Both passes fetch the eligible rows once, claim each row with a conditional
UPDATE (lease + unchanged counters, rows-affected check) so overlapping
scheduler invocations cannot debit the same mandate twice, run the bank calls
on a bounded thread pool, and apply every outcome on the calling thread.
The lease covers the whole batch and carries a token; an outcome write that
no longer matches the token is not applied.

Transport and business failures become retry counters, never exceptions.
Only envelope (key material) failures escape a batch, after every other row
has been written.
"""
import logging
import math
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.db import DatabaseError, IntegrityError, transaction
from django.db.models import F, Q
from django.utils import timezone

from .bank_client import (
    BankApiError,
    BankBusinessError,
    BankClient,
    build_create_mandate_payload,
    build_execute_mandate_payload,
    build_notification_payload,
)
from .envelope import EnvelopeError
from .models import ActiveMandate, MandateHistoryEntry, Organisation
from .utils import references
from .utils.dates import add_one_month_clamped, parse_bank_datetime
from .utils.money import from_bank_amount

logger = logging.getLogger(__name__)

EXHAUSTION_ADVANCE = "ADVANCE"
EXHAUSTION_SUSPEND = "SUSPEND"

EXECUTE_SUCCESS = "EXECUTE-SUCCESS"
CREATE_FAIL = "CREATE-FAIL"


class NotFoundError(Exception):
    """A callback references a merchantTranId the engine never issued."""


class PersistenceError(Exception):
    """A state write failed or found the row changed underneath it."""


class MandateStateError(Exception):
    """The requested transition is not allowed from the tenant's current state."""


@dataclass
class MandatePolicy:
    """Retry, backoff and window settings for the lifecycle.

    The retry budgets themselves are fixed on ActiveMandate.
    """

    execution_backoff: timedelta = timedelta(hours=12)
    notification_backoff: timedelta = timedelta(hours=1)
    notification_window: timedelta = timedelta(hours=48)
    exhaustion_policy: str = EXHAUSTION_ADVANCE
    lease: timedelta = timedelta(minutes=5)
    default_amount: Decimal = Decimal("100.00")

    @classmethod
    def from_settings(cls):
        cfg = getattr(settings, "MANDATE_ENGINE", None) or {}
        policy = cls(
            execution_backoff=timedelta(hours=float(cfg.get("EXECUTION_BACKOFF_HOURS", 12))),
            notification_backoff=timedelta(hours=float(cfg.get("NOTIFICATION_BACKOFF_HOURS", 1))),
            notification_window=timedelta(hours=float(cfg.get("NOTIFICATION_WINDOW_HOURS", 48))),
            exhaustion_policy=str(cfg.get("EXHAUSTION_POLICY", EXHAUSTION_ADVANCE)).upper(),
            lease=timedelta(seconds=int(cfg.get("LEASE_SECONDS", 300))),
            default_amount=Decimal(str(cfg.get("DEFAULT_AMOUNT", "100.00"))),
        )
        if policy.exhaustion_policy not in (EXHAUSTION_ADVANCE, EXHAUSTION_SUSPEND):
            raise ImproperlyConfigured(
                f"MANDATE_ENGINE['EXHAUSTION_POLICY'] must be {EXHAUSTION_ADVANCE} or {EXHAUSTION_SUSPEND}"
            )
        return policy


@dataclass
class BatchResult:
    """Per-row outcomes of one scheduler pass."""

    results: list = field(default_factory=list)

    def add(self, outcome):
        self.results.append(outcome)

    def _count(self, status):
        return sum(1 for r in self.results if r.get("status") == status)

    @property
    def processed(self):
        return len(self.results)

    @property
    def successful(self):
        return self._count("success")

    @property
    def failed(self):
        return self._count("failed")

    @property
    def errors(self):
        return self._count("error")

    @property
    def skipped(self):
        return self._count("skipped")

    def as_dict(self):
        return {
            "success": True,
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "errors": self.errors,
            "skipped": self.skipped,
            "results": self.results,
        }


def _lease_free(now):
    return Q(lease_expires_at__isnull=True) | Q(lease_expires_at__lte=now)


def _notification_completed(response):
    """Success flag plus a message that does not describe a pending/queued state."""
    if not response.success:
        return False
    message = (response.message or response.description or "").lower()
    if not message:
        return True
    return any(word in message for word in ("success", "complet", "sent", "accepted"))


class MandateLifecycle:
    """
    State machine for recurring mandates.

    Args:
        client: BankClient (or a test double with the same three methods)
        policy: MandatePolicy; read from settings.MANDATE_ENGINE when omitted
        using: database alias every read and write goes through
        max_workers: upper bound on concurrent bank calls within one pass
        timeout: seconds to wait for a single bank call's result
        clock: callable returning the current aware datetime
    """

    def __init__(self, client=None, policy=None, using="default", max_workers=4, timeout=None, clock=None):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.client = client or BankClient(timeout=timeout)
        self.policy = policy or MandatePolicy.from_settings()
        self.using = using
        self.max_workers = max_workers
        self.timeout = timeout
        self.clock = clock or timezone.now

    def lease_for(self, count):
        """Lease long enough for `count` calls spread over the pool, each allowed its full timeout."""
        call_timeout = self.timeout or getattr(self.client, "timeout", None) or 30
        rounds = math.ceil(count / self.max_workers) if count else 0
        return self.policy.lease + timedelta(seconds=call_timeout * rounds)

    @classmethod
    def from_settings(cls, client=None):
        cfg = getattr(settings, "MANDATE_ENGINE", None) or {}
        return cls(client=client, max_workers=int(cfg.get("MAX_WORKERS", 4)))

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def has_active_mandate(self, organisation):
        """ACTIVATED, or INITIATED and still waiting for its first charge."""
        return ActiveMandate.objects.using(self.using).filter(
            Q(status="ACTIVATED") | Q(status="INITIATED", sequence_number=1),
            organisation_id=organisation.pk,
        ).exists()

    def create_mandate(self, organisation, payer_va, amount=None):
        """
        Register a new standing instruction with the bank.

        Appends a MandateHistoryEntry(INITIATED) and tentatively moves the
        tenant end date forward one month. No ActiveMandate exists until the
        payer approves and the bank calls back.

        Raises:
            MandateStateError: the tenant already has an active mandate
            BankApiError, BankBusinessError: the bank did not accept the request
            EnvelopeError: key material problem
            PersistenceError: the bank accepted but the result could not be stored
        """
        if self.has_active_mandate(organisation):
            raise MandateStateError(f"Organisation {organisation.pk} already has an active mandate")

        amount = Decimal(str(amount)) if amount is not None else self.policy.default_amount
        now = self.clock()
        merchant_tran_id = references.registration_tran_id()
        payload = build_create_mandate_payload(merchant_tran_id, payer_va, amount, organisation.name, now=now)

        response = self.client.create_mandate(payload)

        try:
            with transaction.atomic(using=self.using):
                entry = MandateHistoryEntry.objects.using(self.using).create(
                    organisation_id=organisation.pk,
                    merchant_tran_id=merchant_tran_id,
                    bank_reference_id=response.bank_rrn,
                    amount=amount,
                    status="INITIATED",
                    payer_address=payer_va,
                    initiated_at=now,
                    response_code=response.response_code,
                    response_description=response.description,
                )
                org = Organisation.objects.using(self.using).select_for_update().get(pk=organisation.pk)
                base = org.end_date if org.end_date and org.end_date > now else now
                org.end_date = add_one_month_clamped(base)
                org.save(using=self.using, update_fields=["end_date", "updated_at"])
        except DatabaseError as e:
            logger.error("Mandate %s accepted by bank but not stored: %s", merchant_tran_id, e)
            raise PersistenceError(f"Could not store mandate {merchant_tran_id}: {e}") from e

        logger.info("Mandate %s initiated for organisation %s", merchant_tran_id, organisation.pk)
        return entry

    # ------------------------------------------------------------------
    # Bank callbacks
    # ------------------------------------------------------------------

    def handle_callback(self, data):
        """
        Apply a decrypted bank callback.

        Returns a dict describing what happened ("activated", "duplicate", ...).

        Raises:
            NotFoundError: unknown merchantTranId
            PersistenceError: state could not be written
        """
        merchant_tran_id = data.get("merchantTranId") or ""
        if references.is_execution_tran_id(merchant_tran_id):
            return self._record_execution_callback(data)
        if (data.get("TxnStatus") or "").upper() == CREATE_FAIL:
            return self._record_registration_failure(data)
        return self._activate(data)

    def _activate(self, data):
        merchant_tran_id = data["merchantTranId"]
        db = self.using
        first_charge = None

        try:
            with transaction.atomic(using=db):
                entry = (
                    MandateHistoryEntry.objects.using(db)
                    .select_for_update()
                    .filter(merchant_tran_id=merchant_tran_id, status="INITIATED")
                    .first()
                )
                if entry is None:
                    raise NotFoundError(f"No mandate registration for {merchant_tran_id}")

                existing = (
                    ActiveMandate.objects.using(db)
                    .select_for_update()
                    .filter(organisation_id=entry.organisation_id)
                    .first()
                )

                if existing is not None and existing.registration_tran_id == merchant_tran_id:
                    logger.info("Duplicate approval callback %s ignored", merchant_tran_id)
                    return {
                        "status": "duplicate",
                        "organisation_id": entry.organisation_id,
                        "sequence_number": existing.sequence_number,
                    }

                umn = data.get("UMN") or ""
                payer_name = data.get("PayerName") or ""
                payer_mobile = data.get("PayerMobile") or ""

                if existing is not None:
                    ActiveMandate.objects.using(db).filter(pk=existing.pk).update(
                        unified_mandate_number=umn or existing.unified_mandate_number,
                        payer_name=payer_name or existing.payer_name,
                        payer_mobile=payer_mobile or existing.payer_mobile,
                        sequence_number=F("sequence_number") + 1,
                        status="ACTIVATED",
                        execution_retry_count=0,
                        notified=False,
                        registration_tran_id=merchant_tran_id,
                        updated_at=self.clock(),
                    )
                    mandate = ActiveMandate.objects.using(db).get(pk=existing.pk)
                else:
                    mandate = ActiveMandate.objects.using(db).create(
                        organisation_id=entry.organisation_id,
                        unified_mandate_number=umn,
                        amount=entry.amount,
                        status="INITIATED",
                        sequence_number=1,
                        payer_address=data.get("PayerVA") or entry.payer_address,
                        payer_name=payer_name,
                        payer_mobile=payer_mobile,
                        registration_tran_id=merchant_tran_id,
                    )
                    first_charge = mandate
        except IntegrityError as e:
            raise PersistenceError(f"Could not activate mandate {merchant_tran_id}: {e}") from e

        logger.info(
            "Mandate %s approved for organisation %s (seq=%s, status=%s)",
            merchant_tran_id, mandate.organisation_id, mandate.sequence_number, mandate.status,
        )
        outcome = {
            "status": "activated",
            "organisation_id": mandate.organisation_id,
            "sequence_number": mandate.sequence_number,
        }

        if first_charge is not None and first_charge.sequence_number == 1:
            charge = self.execute_first_charge(first_charge)
            outcome["first_charge"] = charge
        return outcome

    def _record_execution_callback(self, data):
        merchant_tran_id = data["merchantTranId"]
        txn_status = (data.get("TxnStatus") or "").upper()
        status = "SUCCESS" if txn_status == EXECUTE_SUCCESS else "FAILED"
        db = self.using

        organisation_id = references.organisation_id_from_execution(merchant_tran_id)
        if organisation_id is None or not Organisation.objects.using(db).filter(pk=organisation_id).exists():
            raise NotFoundError(f"No organisation for execution {merchant_tran_id}")

        recorded = MandateHistoryEntry.objects.using(db).filter(merchant_tran_id=merchant_tran_id)
        settled = ["SUCCESS", "ACTIVATED"] if status == "SUCCESS" else ["FAILED"]
        if recorded.filter(status__in=settled).exists():
            logger.info("Execution callback %s already recorded", merchant_tran_id)
            return {"status": "duplicate", "organisation_id": organisation_id}

        if status == "SUCCESS" and recorded.filter(status="FAILED").exists():
            logger.warning(
                "Execution %s confirmed by bank after being recorded as failed; reconcile organisation %s",
                merchant_tran_id, organisation_id,
            )

        try:
            self._append_history(
                organisation_id=organisation_id,
                merchant_tran_id=merchant_tran_id,
                status=status,
                amount=from_bank_amount(data.get("PayerAmount")) or Decimal("0.00"),
                payer_address=data.get("PayerVA") or "",
                payer_name=data.get("PayerName") or "",
                payer_mobile=data.get("PayerMobile") or "",
                bank_reference_id=data.get("BankRRN"),
                unified_mandate_number=data.get("UMN"),
                response_code=data.get("ResponseCode"),
                response_description=data.get("RespCodeDescription"),
                initiated_at=parse_bank_datetime(data.get("TxnInitDate")),
                completed_at=parse_bank_datetime(data.get("TxnCompletionDate")),
            )
        except IntegrityError:
            # Concurrent delivery of the same callback got there first
            return {"status": "duplicate", "organisation_id": organisation_id}

        return {"status": "recorded", "organisation_id": organisation_id, "history_status": status}

    def _record_registration_failure(self, data):
        merchant_tran_id = data["merchantTranId"]
        db = self.using
        entry = (
            MandateHistoryEntry.objects.using(db)
            .filter(merchant_tran_id=merchant_tran_id, status="INITIATED")
            .first()
        )
        if entry is None:
            raise NotFoundError(f"No mandate registration for {merchant_tran_id}")

        if MandateHistoryEntry.objects.using(db).filter(merchant_tran_id=merchant_tran_id, status="FAILED").exists():
            return {"status": "duplicate", "organisation_id": entry.organisation_id}

        try:
            self._append_history(
                organisation_id=entry.organisation_id,
                merchant_tran_id=merchant_tran_id,
                status="FAILED",
                amount=entry.amount,
                payer_address=data.get("PayerVA") or entry.payer_address,
                payer_name=data.get("PayerName") or "",
                payer_mobile=data.get("PayerMobile") or "",
                bank_reference_id=data.get("BankRRN"),
                response_code=data.get("ResponseCode"),
                response_description=data.get("RespCodeDescription") or "Mandate creation failed",
                initiated_at=parse_bank_datetime(data.get("TxnInitDate")),
                completed_at=parse_bank_datetime(data.get("TxnCompletionDate")),
            )
        except IntegrityError:
            return {"status": "duplicate", "organisation_id": entry.organisation_id}

        logger.info("Mandate %s creation failed at the bank", merchant_tran_id)
        return {"status": "create_failed", "organisation_id": entry.organisation_id}

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def due_executions(self, now):
        cutoff = now - self.policy.execution_backoff
        # A stamped attempt gates re-entry even at retry 0: the bank may have taken the debit
        retry_gate = Q(execution_retry_count=0, last_execution_attempt_at__isnull=True) | Q(
            execution_retry_count__lte=9,
            last_execution_attempt_at__lt=cutoff,
        )
        scheduled = Q(status="ACTIVATED", notified=True, organisation__end_date__gte=now)
        first_charge = Q(status="INITIATED", sequence_number=1)
        return (
            ActiveMandate.objects.using(self.using)
            .select_related("organisation")
            .filter(scheduled | first_charge)
            .filter(retry_gate)
            .order_by("pk")
        )

    def run_due_executions(self):
        """Debit every mandate that is due, or due for a retry. Safe to call repeatedly."""
        now = self.clock()
        mandates = list(self.due_executions(now))
        logger.info("Executing %s due mandates", len(mandates))
        result = self._execute(mandates, now)
        logger.info(
            "Execution pass: processed=%s successful=%s failed=%s errors=%s skipped=%s",
            result.processed, result.successful, result.failed, result.errors, result.skipped,
        )
        return result

    def execute_first_charge(self, mandate):
        """Charge sequence 1 right after activation. Returns the row outcome."""
        now = self.clock()
        mandate = ActiveMandate.objects.using(self.using).select_related("organisation").get(pk=mandate.pk)
        result = self._execute([mandate], now)
        return result.results[0]

    def _execute(self, mandates, now):
        result = BatchResult()
        jobs = []
        lease = self.lease_for(len(mandates))
        for mandate in mandates:
            if not self._claim(mandate, now, lease):
                result.add({"organisation_id": mandate.organisation_id, "status": "skipped", "reason": "leased"})
                continue
            merchant_tran_id = references.execution_tran_id(mandate.organisation_id)
            payload = build_execute_mandate_payload(merchant_tran_id, mandate, mandate.organisation.name)
            jobs.append((mandate, merchant_tran_id, payload))

        fatal = None
        for mandate, merchant_tran_id, response, error in self._dispatch(self.client.execute_mandate, jobs):
            if isinstance(error, EnvelopeError):
                fatal = fatal or error
                result.add(self._abandon(mandate, error, stamp={"last_execution_attempt_at": now}))
                continue
            try:
                if error is None:
                    outcome = self._record_execution_success(mandate, merchant_tran_id, response, now)
                elif isinstance(error, (BankApiError, BankBusinessError)):
                    outcome = self._record_execution_failure(mandate, merchant_tran_id, error, now)
                else:
                    logger.error(
                        "Unexpected error executing mandate for organisation %s: %r",
                        mandate.organisation_id, error,
                    )
                    outcome = self._abandon(mandate, error, stamp={"last_execution_attempt_at": now})
            except (PersistenceError, DatabaseError) as e:
                logger.error("Could not record execution for organisation %s: %s", mandate.organisation_id, e)
                outcome = self._abandon(mandate, e, stamp={"last_execution_attempt_at": now})
            result.add(outcome)

        if fatal is not None:
            raise fatal
        return result

    def _record_execution_success(self, mandate, merchant_tran_id, response, now):
        db = self.using
        first_charge = mandate.status == "INITIATED"

        with transaction.atomic(using=db):
            updated = ActiveMandate.objects.using(db).filter(
                pk=mandate.pk,
                sequence_number=mandate.sequence_number,
                status=mandate.status,
                lease_token=mandate.lease_token,
            ).update(
                status="ACTIVATED",
                # First charge debits sequence 1 and, like every success, leaves the row at 2
                sequence_number=F("sequence_number") + 1,
                execution_retry_count=0,
                notified=False,
                last_execution_attempt_at=now,
                lease_expires_at=None,
                lease_token="",
                unified_mandate_number=response.umn or mandate.unified_mandate_number,
                payer_name=response.raw.get("PayerName") or mandate.payer_name,
                payer_mobile=response.raw.get("PayerMobile") or mandate.payer_mobile,
                updated_at=now,
            )

            self._append_history(
                organisation_id=mandate.organisation_id,
                merchant_tran_id=merchant_tran_id,
                status="ACTIVATED" if first_charge else "SUCCESS",
                amount=mandate.amount,
                payer_address=mandate.payer_address,
                payer_name=response.raw.get("PayerName") or mandate.payer_name,
                payer_mobile=response.raw.get("PayerMobile") or mandate.payer_mobile,
                bank_reference_id=response.bank_rrn,
                unified_mandate_number=response.umn or mandate.unified_mandate_number,
                response_code=response.response_code,
                response_description=response.description or "Execution successful",
                initiated_at=parse_bank_datetime(response.raw.get("TxnInitDate")) or now,
                completed_at=parse_bank_datetime(response.raw.get("TxnCompletionDate")) or now,
            )

            if updated != 1:
                # The bank took the debit but another pass owns the row now
                logger.warning(
                    "Lease lost on organisation %s; debit %s recorded for reconciliation (seq=%s)",
                    mandate.organisation_id, merchant_tran_id, mandate.sequence_number,
                )
                return {
                    "organisation_id": mandate.organisation_id,
                    "status": "error",
                    "merchant_tran_id": merchant_tran_id,
                    "error": "Lease lost during execution; debit recorded for reconciliation",
                }

            org = Organisation.objects.using(db).select_for_update().get(pk=mandate.organisation_id)
            if first_charge:
                end_date = add_one_month_clamped(now)
                if org.end_date and org.end_date > end_date:
                    end_date = org.end_date
            else:
                end_date = add_one_month_clamped(org.end_date or now)
            Organisation.objects.using(db).filter(pk=org.pk).update(end_date=end_date, updated_at=now)

        logger.info(
            "Mandate execution %s succeeded for organisation %s (seq=%s)",
            merchant_tran_id, mandate.organisation_id, mandate.sequence_number,
        )
        return {
            "organisation_id": mandate.organisation_id,
            "status": "success",
            "merchant_tran_id": merchant_tran_id,
            "executed_sequence": mandate.sequence_number,
            "sequence_number": mandate.sequence_number + 1,
            "retry_count": 0,
            "end_date": end_date.isoformat(),
        }

    def _record_execution_failure(self, mandate, merchant_tran_id, error, now):
        db = self.using
        retry_count = mandate.execution_retry_count
        changes = {"last_execution_attempt_at": now, "lease_expires_at": None, "lease_token": "", "updated_at": now}
        outcome = {
            "organisation_id": mandate.organisation_id,
            "status": "failed",
            "merchant_tran_id": merchant_tran_id,
            "error": str(error),
        }

        if retry_count >= 9:
            changes["execution_retry_count"] = 0
            if self.policy.exhaustion_policy == EXHAUSTION_SUSPEND:
                changes["status"] = "SUSPENDED"
                outcome.update(suspended=True, sequence_number=mandate.sequence_number)
                description = "Max retry attempts reached, mandate suspended"
            else:
                changes["sequence_number"] = F("sequence_number") + 1
                outcome.update(reset_retry=True, sequence_number=mandate.sequence_number + 1)
                description = "Max retry attempts reached"
            outcome["retry_count"] = 0
        else:
            changes["execution_retry_count"] = F("execution_retry_count") + 1
            outcome.update(retry_count=retry_count + 1, sequence_number=mandate.sequence_number)
            description = f"Execution failed, attempt {retry_count + 1} of 9"

        with transaction.atomic(using=db):
            updated = ActiveMandate.objects.using(db).filter(
                pk=mandate.pk,
                sequence_number=mandate.sequence_number,
                execution_retry_count=retry_count,
                lease_token=mandate.lease_token,
            ).update(**changes)
            if updated != 1:
                raise PersistenceError(
                    f"Mandate for organisation {mandate.organisation_id} changed during execution"
                )
            self._append_history(
                organisation_id=mandate.organisation_id,
                merchant_tran_id=merchant_tran_id,
                status="FAILED",
                amount=mandate.amount,
                payer_address=mandate.payer_address,
                payer_name=mandate.payer_name,
                payer_mobile=mandate.payer_mobile,
                unified_mandate_number=mandate.unified_mandate_number,
                response_code=getattr(error, "response_code", None) or _status_code(error),
                response_description=description,
                initiated_at=now,
                completed_at=now,
            )

        logger.info(
            "Mandate execution %s failed for organisation %s: %s",
            merchant_tran_id, mandate.organisation_id, description,
        )
        return outcome

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def due_notifications(self, now):
        cutoff = now - self.policy.notification_backoff
        regular = Q(sequence_number__gt=1) & (
            Q(notification_retry_count=0)
            | Q(notification_retry_count__lt=3, last_notification_attempt_at__lt=cutoff)
        )
        reset = Q(notification_retry_count=3, last_notification_attempt_at__lt=cutoff)
        return (
            ActiveMandate.objects.using(self.using)
            .select_related("organisation")
            .filter(
                status="ACTIVATED",
                notified=False,
                organisation__end_date__gt=now,
                organisation__end_date__lte=now + self.policy.notification_window,
            )
            .filter(regular | reset)
            .order_by("pk")
        )

    def run_due_notifications(self):
        """Send the advance debit reminder to every mandate inside the window. Safe to call repeatedly."""
        now = self.clock()
        mandates = list(self.due_notifications(now))
        logger.info("Notifying %s due mandates", len(mandates))

        result = BatchResult()
        jobs = []
        lease = self.lease_for(len(mandates))
        for mandate in mandates:
            if not self._claim(mandate, now, lease):
                result.add({"organisation_id": mandate.organisation_id, "status": "skipped", "reason": "leased"})
                continue
            merchant_tran_id = references.notification_tran_id(mandate.pk)
            payload = build_notification_payload(
                merchant_tran_id, mandate, mandate.organisation.end_date, merchant_name=mandate.organisation.name
            )
            jobs.append((mandate, merchant_tran_id, payload))

        fatal = None
        for mandate, merchant_tran_id, response, error in self._dispatch(self.client.send_notification, jobs):
            if isinstance(error, EnvelopeError):
                fatal = fatal or error
                result.add(self._abandon(mandate, error))
                continue
            if error is not None and not isinstance(error, (BankApiError, BankBusinessError)):
                logger.error(
                    "Unexpected error notifying mandate for organisation %s: %r",
                    mandate.organisation_id, error,
                )
                result.add(self._abandon(mandate, error))
                continue
            try:
                completed = error is None and _notification_completed(response)
                outcome = self._record_notification(mandate, merchant_tran_id, completed, error, now)
            except (PersistenceError, DatabaseError) as e:
                logger.error("Could not record notification for organisation %s: %s", mandate.organisation_id, e)
                outcome = self._abandon(mandate, e)
            result.add(outcome)

        logger.info(
            "Notification pass: processed=%s successful=%s failed=%s errors=%s skipped=%s",
            result.processed, result.successful, result.failed, result.errors, result.skipped,
        )
        if fatal is not None:
            raise fatal
        return result

    def _record_notification(self, mandate, merchant_tran_id, completed, error, now):
        retry_count = mandate.notification_retry_count
        changes = {
            "last_notification_attempt_at": now,
            "lease_expires_at": None,
            "lease_token": "",
            "updated_at": now,
        }
        outcome = {"organisation_id": mandate.organisation_id, "merchant_tran_id": merchant_tran_id}

        if completed:
            changes.update(notified=True, notification_retry_count=0)
            outcome.update(status="success", retry_count=0)
        elif retry_count >= 3:
            changes.update(notified=False, notification_retry_count=0)
            outcome.update(status="failed", retry_count=0, message="Retries reset after 3 attempts")
        else:
            changes.update(notified=False, notification_retry_count=retry_count + 1)
            outcome.update(status="failed", retry_count=retry_count + 1)

        if error is not None:
            outcome["error"] = str(error)

        updated = ActiveMandate.objects.using(self.using).filter(
            pk=mandate.pk,
            notification_retry_count=retry_count,
            notified=False,
            lease_token=mandate.lease_token,
        ).update(**changes)
        if updated != 1:
            raise PersistenceError(
                f"Mandate for organisation {mandate.organisation_id} changed during notification"
            )
        return outcome

    # ------------------------------------------------------------------
    # Shared plumbing
    # ------------------------------------------------------------------

    def _claim(self, mandate, now, lease):
        """Take the per-mandate lease if nobody holds it and the row still matches what we read."""
        token = uuid.uuid4().hex
        claimed = (
            ActiveMandate.objects.using(self.using)
            .filter(
                pk=mandate.pk,
                status=mandate.status,
                sequence_number=mandate.sequence_number,
                execution_retry_count=mandate.execution_retry_count,
                notification_retry_count=mandate.notification_retry_count,
                notified=mandate.notified,
            )
            .filter(_lease_free(now))
            .update(lease_expires_at=now + lease, lease_token=token)
        )
        if claimed != 1:
            return False
        mandate.lease_token = token
        return True

    def _release(self, mandate, **stamp):
        ActiveMandate.objects.using(self.using).filter(pk=mandate.pk, lease_token=mandate.lease_token).update(
            lease_expires_at=None, lease_token="", **stamp
        )

    def _abandon(self, mandate, error, stamp=None):
        """
        Release the lease without touching counters and report the row as an error.

        `stamp` holds extra columns to write with the release; executions pass their
        attempt time so a debit the bank may already have taken waits out the backoff.
        """
        try:
            self._release(mandate, **(stamp or {}))
        except DatabaseError as e:
            # The lease expires on its own; the row is retried after it does
            logger.error("Could not release lease for organisation %s: %s", mandate.organisation_id, e)
        return {"organisation_id": mandate.organisation_id, "status": "error", "error": str(error)}

    def _dispatch(self, call, jobs):
        """Run `call(payload)` for every job on the pool; yield (mandate, tran_id, response, error)."""
        if not jobs:
            return
        workers = min(self.max_workers, len(jobs))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mandate-bank") as pool:
            futures = [(job, pool.submit(call, job[2])) for job in jobs]
            for (mandate, merchant_tran_id, _payload), future in futures:
                try:
                    response, error = future.result(timeout=self.timeout), None
                except FutureTimeoutError:
                    response, error = None, BankApiError(None, "", message="Bank call timed out")
                except Exception as e:
                    response, error = None, e
                yield mandate, merchant_tran_id, response, error

    def _append_history(self, **fields):
        return MandateHistoryEntry.objects.using(self.using).create(**fields)


def _status_code(error):
    code = getattr(error, "status_code", None)
    return str(code) if code is not None else None
