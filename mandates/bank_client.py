"""
Bank client for the UPI recurring-mandate API.
Handles payload building, envelope encryption, and response parsing.
Never logs API keys or decrypted payer data.
"""
import logging
from datetime import timedelta

import requests
from django.conf import settings
from django.utils import timezone

from .envelope import get_envelope
from .utils.dates import format_bank_date, format_bank_datetime
from .utils.money import to_bank_amount
from .utils.references import bill_number

logger = logging.getLogger(__name__)

CREATE_MANDATE = "CreateMandate"
EXECUTE_MANDATE = "ExecuteMandate"
MANDATE_NOTIFICATION = "MandateNotification"

DEFAULT_PATHS = {
    CREATE_MANDATE: "/api/MerchantAPI/UPI2/v1/CreateMandate",
    EXECUTE_MANDATE: "/api/MerchantAPI/UPI2/v1/ExecuteMandate",
    MANDATE_NOTIFICATION: "/api/MerchantAPI/UPI2/v1/MandateNotification",
}


def _merchant_fields():
    cfg = settings.BANK
    return {
        "merchantId": cfg.get("MERCHANT_ID", ""),
        "subMerchantId": cfg.get("SUB_MERCHANT_ID") or cfg.get("MERCHANT_ID", ""),
        "terminalId": cfg.get("TERMINAL_ID", ""),
        "merchantName": cfg.get("MERCHANT_NAME", ""),
    }


def build_create_mandate_payload(merchant_tran_id, payer_va, amount, sub_merchant_name, now=None):
    """
    Build the plaintext payload for a CreateMandate (collect) request.

    The mandate is valid from tomorrow for one year, with a monthly amount
    limit and "as presented" frequency: the engine decides when to debit.
    """
    now = now or timezone.now()
    validity_end = now + timedelta(days=365)

    payload = _merchant_fields()
    payload.update({
        "subMerchantName": sub_merchant_name or "",
        "payerVa": payer_va,
        "amount": to_bank_amount(amount),
        "note": "Mandate Request",
        "collectByDate": format_bank_datetime(validity_end),
        "merchantTranId": merchant_tran_id,
        "billNumber": bill_number(),
        "requestType": "C",
        "validityStartDate": format_bank_date(now + timedelta(days=1)),
        "validityEndDate": format_bank_date(validity_end),
        "amountLimit": "M",
        "frequency": "AS",
        "remark": "Monthly Subscription",
        "autoExecute": "N",
        "revokable": "Y",
        "blockfund": "N",
        "purpose": "RECURRING",
    })
    return payload


def build_execute_mandate_payload(merchant_tran_id, mandate, sub_merchant_name):
    """Build the plaintext payload for an ExecuteMandate debit of `mandate.sequence_number`."""
    payload = _merchant_fields()
    payload.update({
        "subMerchantName": sub_merchant_name or "",
        "amount": to_bank_amount(mandate.amount),
        "merchantTranId": merchant_tran_id,
        "billNumber": bill_number(),
        "remark": "Mandate execution request",
        "retryCount": str(mandate.execution_retry_count),
        "mandateSeqNo": str(mandate.sequence_number),
        "UMN": mandate.unified_mandate_number,
        "purpose": "RECURRING",
    })
    return payload


def build_notification_payload(merchant_tran_id, mandate, execution_date, merchant_name=None):
    """Build the plaintext payload for a MandateNotification (pre-debit reminder)."""
    payload = _merchant_fields()
    if merchant_name:
        payload["merchantName"] = merchant_name
    payload.update({
        "merchantTranId": merchant_tran_id,
        "mandateSeqNo": str(mandate.sequence_number),
        "executionDate": execution_date.isoformat() if execution_date else "",
        "amount": to_bank_amount(mandate.amount),
        "note": "Mandate notification",
        "payerVa": mandate.payer_address,
        "value": mandate.unified_mandate_number,
    })
    return payload


def parse_bank_bool(value):
    """The bank sends booleans as the strings "true"/"false"; normalise at the boundary."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


class BankApiError(Exception):
    """Transport/HTTP failure talking to the bank, or a reply without an encrypted payload. Retriable."""
    def __init__(self, status_code, body, message=None):
        self.status_code = status_code
        self.body = body
        self.message = message or f"Bank API error: {status_code}"
        super().__init__(self.message)


class BankBusinessError(Exception):
    """The bank processed the request and rejected it. Retriable per lifecycle policy."""
    def __init__(self, response_code, description, response=None):
        self.response_code = response_code
        self.description = description
        self.response = response
        super().__init__(f"Bank rejected request: {response_code} {description or ''}".strip())


class BankResponse:
    """Decrypted bank response with the fields the engine relies on."""

    def __init__(self, data):
        self.raw = data if isinstance(data, dict) else {"value": data}
        self.success = parse_bank_bool(self.raw.get("success"))
        self.response_code = self.raw.get("response") or self.raw.get("ResponseCode")
        self.description = self.raw.get("RespCodeDescription") or self.raw.get("message")
        self.message = self.raw.get("message") or ""
        self.bank_rrn = self.raw.get("BankRRN")
        self.umn = self.raw.get("UMN")
        self.merchant_tran_id = self.raw.get("merchantTranId")

    def __repr__(self):
        return f"BankResponse(success={self.success}, code={self.response_code})"


class BankClient:
    """Client for the bank's CreateMandate / ExecuteMandate / MandateNotification endpoints"""

    def __init__(self, envelope=None, base_url=None, api_key=None, timeout=None):
        self.config = settings.BANK
        self.base_url = (base_url or self.config.get("BASE_URL", "")).rstrip("/")
        self.api_key = api_key or self.config.get("API_KEY")
        self.timeout = timeout or self.config.get("TIMEOUT", 30)
        self.paths = dict(DEFAULT_PATHS)
        self.paths.update(self.config.get("PATHS") or {})
        self._envelope = envelope

        if not self.base_url or not self.api_key:
            raise ValueError("BANK configuration missing: BASE_URL and API_KEY required in settings.BANK")

    @property
    def envelope(self):
        if self._envelope is None:
            self._envelope = get_envelope()
        return self._envelope

    def _build_headers(self):
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "apikey": self.api_key,
        }

    def _build_body(self, service, payload):
        encrypted = self.envelope.encrypt(payload)
        body = {
            "requestId": payload.get("merchantTranId", ""),
            "service": service,
            "encryptedKey": encrypted["encryptedKey"],
            "iv": encrypted["iv"],
            "encryptedData": encrypted["encryptedData"],
        }
        if service == CREATE_MANDATE:
            body.update({
                "oaepHashingAlgorithm": "NONE",
                "clientInfo": "",
                "optionalParam": "",
            })
        return body

    def call(self, service, payload):
        """
        Encrypt `payload`, POST it to the endpoint for `service` and open the response.

        Returns:
            BankResponse with success == True

        Raises:
            EncryptionError, DecryptionError: key material or envelope problem (fatal, not retried)
            BankApiError: network failure, timeout, non-2xx, or a body without encryptedData
            BankBusinessError: decrypted response without success == "true"
        """
        url = f"{self.base_url}{self.paths[service]}"
        body = self._build_body(service, payload)
        request_id = body["requestId"]

        logger.info("Bank %s request %s", service, request_id)
        try:
            response = requests.post(url, json=body, headers=self._build_headers(), timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.warning("Bank %s request %s failed: %s", service, request_id, e.__class__.__name__)
            raise BankApiError(
                status_code=None,
                body=str(e),
                message=f"Request failed: {str(e)}",
            )

        if not (200 <= response.status_code < 300):
            logger.warning("Bank %s request %s returned HTTP %s", service, request_id, response.status_code)
            raise BankApiError(
                status_code=response.status_code,
                body=response.text,
                message=f"Bank API returned {response.status_code}",
            )

        try:
            response_json = response.json()
        except ValueError:
            response_json = None

        if not isinstance(response_json, dict) or not response_json.get("encryptedData"):
            raise BankApiError(
                status_code=response.status_code,
                body=response.text,
                message="Bank response carried no encrypted payload",
            )

        decrypted = self.envelope.decrypt(
            response_json.get("encryptedData"),
            response_json.get("encryptedKey"),
            response_json.get("iv"),
        )

        result = BankResponse(decrypted)
        if not result.success:
            logger.info(
                "Bank %s request %s rejected: %s",
                service, request_id, result.response_code,
            )
            raise BankBusinessError(result.response_code, result.description, result)

        logger.info("Bank %s request %s succeeded", service, request_id)
        return result

    def create_mandate(self, payload):
        return self.call(CREATE_MANDATE, payload)

    def execute_mandate(self, payload):
        return self.call(EXECUTE_MANDATE, payload)

    def send_notification(self, payload):
        return self.call(MANDATE_NOTIFICATION, payload)
