#======================================================================================================
#
#   M-PESA (DARAJA) GATEWAY CLIENT: STK PUSH COLLECTION, B2C DISBURSEMENT, STK STATUS QUERY
#
#======================================================================================================
import base64
from datetime import datetime
from typing import NamedTuple, Optional

import requests
from flask import current_app

from exceptions import ConfigurationError, GatewayError, ValidationError
from logger import payments_logger
from utils import validate_msisdn


SANDBOX_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_URL = "https://api.safaricom.co.ke"

# STK query answers this while the customer has not yet acted on the prompt
STK_STILL_PROCESSING = "500.001.1001"


class CollectionResult(NamedTuple):
    checkout_request_id: str
    merchant_request_id: Optional[str]
    response_code: str
    response_description: Optional[str]
    customer_message: Optional[str]

    def to_dict(self):
        return {
            "CheckoutRequestID": self.checkout_request_id,
            "MerchantRequestID": self.merchant_request_id,
            "ResponseCode": self.response_code,
            "ResponseDescription": self.response_description,
            "CustomerMessage": self.customer_message,
        }


class DisbursementResult(NamedTuple):
    conversation_id: Optional[str]
    originator_conversation_id: Optional[str]
    response_code: str
    response_description: Optional[str]

    @property
    def accepted(self):
        return self.response_code == "0"


class CollectionStatus(NamedTuple):
    still_processing: bool
    result_code: Optional[int] = None
    result_desc: Optional[str] = None


class MpesaClient:
    """
    Outbound calls to Safaricom Daraja. Every call first obtains a bearer
    token with the consumer key pair, then posts the request. A successful
    return only means M-Pesa accepted the request; the outcome arrives later
    on the callback URLs.
    """

    def __init__(self, consumer_key=None, consumer_secret=None, business_short_code=None,
                 pass_key=None, callback_url=None, account_reference="MoneyQash",
                 b2c_initiator_name=None, b2c_security_credential=None,
                 b2c_command_id="BusinessPayment", b2c_shortcode=None,
                 b2c_result_url=None, b2c_queue_timeout_url=None,
                 environment="sandbox", timeout=30):
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.business_short_code = business_short_code
        self.pass_key = pass_key
        self.callback_url = callback_url
        self.account_reference = account_reference
        self.b2c_initiator_name = b2c_initiator_name
        self.b2c_security_credential = b2c_security_credential
        self.b2c_command_id = b2c_command_id
        self.b2c_shortcode = b2c_shortcode
        self.b2c_result_url = b2c_result_url
        self.b2c_queue_timeout_url = b2c_queue_timeout_url
        self.base_url = PRODUCTION_URL if environment == "production" else SANDBOX_URL
        self.timeout = timeout

    @classmethod
    def from_config(cls, config):
        return cls(
            consumer_key=config.get("MPESA_CONSUMER_KEY"),
            consumer_secret=config.get("MPESA_CONSUMER_SECRET"),
            business_short_code=config.get("MPESA_BUSINESS_SHORT_CODE"),
            pass_key=config.get("MPESA_PASS_KEY"),
            callback_url=config.get("MPESA_CALLBACK_URL"),
            account_reference=config.get("MPESA_ACCOUNT_REFERENCE", "MoneyQash"),
            b2c_initiator_name=config.get("MPESA_B2C_INITIATOR_NAME"),
            b2c_security_credential=config.get("MPESA_B2C_SECURITY_CREDENTIAL"),
            b2c_command_id=config.get("MPESA_B2C_COMMAND_ID", "BusinessPayment"),
            b2c_shortcode=config.get("MPESA_B2C_SHORTCODE"),
            b2c_result_url=config.get("MPESA_B2C_RESULT_URL"),
            b2c_queue_timeout_url=config.get("MPESA_B2C_QUEUE_TIMEOUT_URL"),
            environment=config.get("MPESA_ENV", "sandbox"),
            timeout=config.get("MPESA_TIMEOUT_SECONDS", 30),
        )

    # ------------------------------------------------------------------
    # configuration checks
    # ------------------------------------------------------------------
    def missing_collection_settings(self):
        required = {
            "MPESA_CONSUMER_KEY": self.consumer_key,
            "MPESA_CONSUMER_SECRET": self.consumer_secret,
            "MPESA_BUSINESS_SHORT_CODE": self.business_short_code,
            "MPESA_PASS_KEY": self.pass_key,
            "MPESA_CALLBACK_URL": self.callback_url,
        }
        return [name for name, value in required.items() if not value]

    def missing_disbursement_settings(self):
        required = {
            "MPESA_CONSUMER_KEY": self.consumer_key,
            "MPESA_CONSUMER_SECRET": self.consumer_secret,
            "MPESA_B2C_INITIATOR_NAME": self.b2c_initiator_name,
            "MPESA_B2C_SECURITY_CREDENTIAL": self.b2c_security_credential,
            "MPESA_B2C_COMMAND_ID": self.b2c_command_id,
            "MPESA_B2C_SHORTCODE": self.b2c_shortcode,
            "MPESA_B2C_RESULT_URL": self.b2c_result_url,
            "MPESA_B2C_QUEUE_TIMEOUT_URL": self.b2c_queue_timeout_url,
        }
        return [name for name, value in required.items() if not value]

    # ------------------------------------------------------------------
    # low level HTTP
    # ------------------------------------------------------------------
    @staticmethod
    def _timestamp():
        return datetime.now().strftime("%Y%m%d%H%M%S")

    def _stk_password(self, timestamp):
        raw = f"{self.business_short_code}{self.pass_key}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    def _basic_auth_header(self):
        credentials = f"{self.consumer_key}:{self.consumer_secret}"
        encoded_credentials = base64.b64encode(credentials.encode()).decode()
        return f"Basic {encoded_credentials}"

    def _json_or_error(self, response, action):
        if not response.ok:
            payments_logger.error(f"M-Pesa {action} HTTP {response.status_code}: {response.text[:500]}")
            raise GatewayError(f"M-Pesa {action} failed with HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            payments_logger.error(f"M-Pesa {action} returned an unexpected body: {response.text[:500]}")
            raise GatewayError(f"M-Pesa {action} returned an invalid response")
        return data

    def get_access_token(self):
        if not self.consumer_key or not self.consumer_secret:
            payments_logger.error("M-Pesa Consumer Key or Secret is not configured.")
            raise ConfigurationError("M-Pesa API credentials not configured.")

        try:
            response = requests.get(
                f"{self.base_url}/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                headers={"Authorization": self._basic_auth_header()},
                timeout=self.timeout,
            )
        except requests.Timeout:
            payments_logger.error("M-Pesa access token request timed out")
            raise GatewayError("Timed out obtaining M-Pesa access token")
        except requests.RequestException as e:
            payments_logger.error(f"M-Pesa access token request error: {e}")
            raise GatewayError("Failed to get access token")

        data = self._json_or_error(response, "token request")
        token = data.get("access_token")
        if not token:
            raise GatewayError("Failed to get access token")
        return token

    def _post(self, path, payload, action, allow_error_body=False):
        token = self.get_access_token()
        try:
            response = requests.post(
                f"{self.base_url}{path}",
                json=payload,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.Timeout:
            payments_logger.error(f"M-Pesa {action} timed out after {self.timeout}s")
            raise GatewayError(f"M-Pesa {action} timed out")
        except requests.RequestException as e:
            payments_logger.error(f"M-Pesa {action} request error: {e}")
            raise GatewayError(f"M-Pesa {action} failed")

        if allow_error_body and not response.ok:
            try:
                data = response.json()
            except ValueError:
                data = None
            if isinstance(data, dict):
                return response.status_code, data
        return response.status_code, self._json_or_error(response, action)

    # ------------------------------------------------------------------
    # public operations
    # ------------------------------------------------------------------
    def request_collection(self, phone_number: str, amount: int) -> CollectionResult:
        """Send an STK push asking ``phone_number`` to pay ``amount``."""
        if not validate_msisdn(phone_number):
            raise ValidationError("Invalid phone number format. Must start with 254 followed by 9 digits")
        missing = self.missing_collection_settings()
        if missing:
            payments_logger.error(f"M-Pesa collection settings missing: {', '.join(missing)}")
            raise ConfigurationError("M-Pesa configuration incomplete.")

        timestamp = self._timestamp()
        payload = {
            "BusinessShortCode": self.business_short_code,
            "Password": self._stk_password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount),
            "PartyA": phone_number,
            "PartyB": self.business_short_code,
            "PhoneNumber": phone_number,
            "CallBackURL": self.callback_url,
            "AccountReference": self.account_reference,
            "TransactionDesc": "Account activation",
        }
        payments_logger.info(f"Initiating STK push for phone {phone_number}, amount {amount}")
        _, data = self._post("/mpesa/stkpush/v1/processrequest", payload, "STK push")
        payments_logger.info(f"STK push response: {data}")

        checkout_request_id = data.get("CheckoutRequestID")
        if not checkout_request_id:
            raise GatewayError("STK push response missing CheckoutRequestID")
        return CollectionResult(
            checkout_request_id=checkout_request_id,
            merchant_request_id=data.get("MerchantRequestID"),
            response_code=str(data.get("ResponseCode", "")),
            response_description=data.get("ResponseDescription"),
            customer_message=data.get("CustomerMessage"),
        )

    def request_disbursement(self, phone_number: str, amount: int, remarks: str = "Withdrawal") -> DisbursementResult:
        """Send ``amount`` to ``phone_number`` through B2C."""
        missing = self.missing_disbursement_settings()
        if missing:
            payments_logger.error(f"M-Pesa B2C settings missing: {', '.join(missing)}")
            raise ConfigurationError("Missing B2C configuration.")
        if not validate_msisdn(phone_number):
            raise ValidationError("Invalid phone number format. Must start with 254 followed by 9 digits")

        payload = {
            "InitiatorName": self.b2c_initiator_name,
            "SecurityCredential": self.b2c_security_credential,
            "CommandID": self.b2c_command_id,
            "Amount": int(amount),
            "PartyA": self.b2c_shortcode,
            "PartyB": phone_number,
            "Remarks": remarks,
            "QueueTimeOutURL": self.b2c_queue_timeout_url,
            "ResultURL": self.b2c_result_url,
            "Occasion": remarks,
        }
        payments_logger.info(f"Initiating B2C payment: {amount} to {phone_number}")
        _, data = self._post("/mpesa/b2c/v1/paymentrequest", payload, "B2C payment")
        payments_logger.info(f"B2C payment response: {data}")

        return DisbursementResult(
            conversation_id=data.get("ConversationID"),
            originator_conversation_id=data.get("OriginatorConversationID"),
            response_code=str(data.get("ResponseCode", "")),
            response_description=data.get("ResponseDescription"),
        )

    def query_collection_status(self, checkout_request_id: str) -> CollectionStatus:
        """Ask M-Pesa what became of an STK push."""
        missing = self.missing_collection_settings()
        if missing:
            raise ConfigurationError("M-Pesa configuration incomplete.")

        timestamp = self._timestamp()
        payload = {
            "BusinessShortCode": self.business_short_code,
            "Password": self._stk_password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        status_code, data = self._post("/mpesa/stkpushquery/v1/query", payload, "STK query", allow_error_body=True)

        if status_code >= 300:
            if data.get("errorCode") == STK_STILL_PROCESSING:
                return CollectionStatus(still_processing=True)
            payments_logger.error(f"STK query for {checkout_request_id} failed: {data}")
            raise GatewayError(f"M-Pesa STK query failed with HTTP {status_code}")

        try:
            result_code = int(data.get("ResultCode"))
        except (TypeError, ValueError):
            raise GatewayError("STK query response missing ResultCode")
        return CollectionStatus(still_processing=False, result_code=result_code, result_desc=data.get("ResultDesc"))


def get_gateway() -> MpesaClient:
    """The gateway client installed on the running app."""
    return current_app.extensions["mpesa"]
