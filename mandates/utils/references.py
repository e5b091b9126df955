"""merchantTranId generation and classification.

Registration attempts use MANDATE_<millis>, executions EXEC_<millis>_<orgId>
and notifications NOTIF_<millis>_<mandateId>. A short random suffix keeps ids
unique when several are generated within the same millisecond.
"""
import time
import uuid

REGISTRATION_PREFIX = "MANDATE_"
EXECUTION_PREFIX = "EXEC_"
NOTIFICATION_PREFIX = "NOTIF_"


def _millis():
    return int(time.time() * 1000)


def _suffix():
    return uuid.uuid4().hex[:6].upper()


def registration_tran_id():
    return f"{REGISTRATION_PREFIX}{_millis()}{_suffix()}"


def execution_tran_id(organisation_id):
    return f"{EXECUTION_PREFIX}{_millis()}{_suffix()}_{organisation_id}"


def notification_tran_id(mandate_id):
    return f"{NOTIFICATION_PREFIX}{_millis()}{_suffix()}_{mandate_id}"


def bill_number():
    return f"BILL_{_millis()}{_suffix()}"


def is_execution_tran_id(merchant_tran_id):
    return str(merchant_tran_id or "").startswith(EXECUTION_PREFIX)


def organisation_id_from_execution(merchant_tran_id):
    """Return the organisation id embedded in an EXEC_ merchantTranId, or None."""
    if not is_execution_tran_id(merchant_tran_id):
        return None
    tail = str(merchant_tran_id).rsplit("_", 1)[-1]
    try:
        return int(tail)
    except ValueError:
        return None
