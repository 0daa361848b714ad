"""
M-Pesa Daraja client.

Supports OAuth authentication, STK Push payment initiation and B2C payouts
against the sandbox or production environment selected by Config.

Only the OAuth token fetch is retried. STK Push and B2C move money, so each
is sent exactly once and a failure is reported to the caller.

Example:
    >>> client = MpesaClient(get_config())
    >>> result = client.initiate_stk_push(
    ...     phone="254712345678",
    ...     amount=Decimal("1000"),
    ...     account_ref="ORD123",
    ...     description="PayLoom"
    ... )
    >>> print(result['CheckoutRequestID'])
"""

import base64
import logging
import threading
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from payloom_escrow.config import Config
from payloom_escrow.utils import mask_sensitive_data

logger = logging.getLogger(__name__)

# Refresh the token this many seconds before Daraja expires it
TOKEN_EXPIRY_MARGIN = 60


class MpesaError(Exception):
    """Any failure talking to Daraja."""
    pass


class AuthenticationError(MpesaError):
    """No usable OAuth token could be obtained."""
    pass


class PaymentError(MpesaError):
    """Daraja did not accept an STK push."""
    pass


class PayoutError(MpesaError):
    """Daraja did not accept a B2C payout."""
    pass


def _build_session(retry: Retry) -> requests.Session:
    session = requests.Session()
    adapter = HTTPAdapter(max_retries=retry)
    for scheme in ("http://", "https://"):
        session.mount(scheme, adapter)
    return session


def _auth_session(max_retries: int, backoff_factor: float) -> requests.Session:
    """Session for the token endpoint: GETs are retried on transient failures."""
    return _build_session(Retry(
        total=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=[408, 429, 500, 502, 503, 504],
        allowed_methods=["GET"],
        raise_on_status=False,
    ))


def _payment_session() -> requests.Session:
    """Session for money-moving POSTs: never retried."""
    return _build_session(Retry(total=0, raise_on_status=False))


def generate_timestamp() -> str:
    """
    Local time as YYYYMMDDHHmmss, the format Daraja signs passwords with.

    Example:
        >>> generate_timestamp()
        '20231215143025'
    """
    return datetime.now().strftime('%Y%m%d%H%M%S')


class MpesaClient:
    """Blocking Daraja client. Async callers run its methods in a worker thread."""

    def __init__(self, config: Config):
        self.config = config
        self.timeout = config.payment_timeout
        self.auth_session = _auth_session(config.auth_max_retries, config.auth_retry_backoff)
        self.payment_session = _payment_session()

        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0
        self._token_lock = threading.Lock()

    def get_access_token(self, force_refresh: bool = False) -> str:
        """
        Return a Daraja OAuth token.

        Tokens are cached until shortly before they expire.

        Raises:
            AuthenticationError: If Daraja rejects the credentials or is unreachable
        """
        with self._token_lock:
            if not force_refresh and self._token and time.monotonic() < self._token_expires_at:
                return self._token

            if not (self.config.mpesa_consumer_key and self.config.mpesa_consumer_secret):
                raise AuthenticationError("M-Pesa consumer key and secret are not configured")

            logger.info(f"Requesting M-Pesa access token from {self.config.mpesa_environment} environment")

            try:
                response = self.auth_session.get(
                    self.config.mpesa_auth_url,
                    auth=(self.config.mpesa_consumer_key, self.config.mpesa_consumer_secret),
                    timeout=self.timeout
                )
                response.raise_for_status()
                token_data = response.json()

            except requests.exceptions.HTTPError as e:
                logger.error(f"HTTP error during authentication: {e}")
                raise AuthenticationError(f"HTTP error: {e}") from e

            except requests.exceptions.Timeout as e:
                logger.error(f"Timeout during authentication: {e}")
                raise AuthenticationError(f"Request timeout: {e}") from e

            except requests.exceptions.RequestException as e:
                logger.error(f"Request error during authentication: {e}")
                raise AuthenticationError(f"Request failed: {e}") from e

            except ValueError as e:
                logger.error(f"Invalid JSON in authentication response: {e}")
                raise AuthenticationError("Invalid authentication response") from e

            access_token = token_data.get('access_token')
            if not access_token:
                raise AuthenticationError("Access token not found in response")

            expires_in = int(token_data.get('expires_in', 3599))
            self._token = access_token
            self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0)

            logger.info("Successfully obtained M-Pesa access token")
            return access_token

    def generate_password(self, timestamp: Optional[str] = None) -> Tuple[str, str]:
        """
        Generate the Base64 password for STK Push requests.

        Returns:
            Tuple of (password, timestamp)
        """
        if timestamp is None:
            timestamp = generate_timestamp()

        raw_password = f"{self.config.mpesa_shortcode}{self.config.mpesa_passkey}{timestamp}"
        encoded_password = base64.b64encode(raw_password.encode()).decode('utf-8')
        return encoded_password, timestamp

    def _post(self, url: str, payload: Dict[str, Any], error_cls: type) -> Dict[str, Any]:
        try:
            access_token = self.get_access_token()
        except AuthenticationError as e:
            logger.error(f"Failed to get access token: {e}")
            raise error_cls(f"Authentication failed: {e}") from e

        headers = {
            'Authorization': f'Bearer {access_token}',
            'Content-Type': 'application/json'
        }

        try:
            response = self.payment_session.post(url, json=payload, headers=headers, timeout=self.timeout)
            response_data = response.json()

        except requests.exceptions.Timeout as e:
            logger.error(f"Timeout calling {url}: {e}")
            raise error_cls(f"Request timeout: {e}") from e

        except requests.exceptions.RequestException as e:
            logger.error(f"Request error calling {url}: {e}")
            raise error_cls(f"Request failed: {e}") from e

        except ValueError as e:
            logger.error(f"Invalid JSON from {url}: {e}")
            raise error_cls("Invalid response from M-Pesa") from e

        if response.status_code != 200:
            error_msg = response_data.get('errorMessage', 'Unknown error')
            error_code = response_data.get('errorCode', 'Unknown')
            logger.error(f"M-Pesa request failed: {error_code} - {error_msg}")
            raise error_cls(f"Request failed: {error_msg} (Code: {error_code})")

        response_code = str(response_data.get('ResponseCode', ''))
        if response_code != '0':
            error_msg = response_data.get('ResponseDescription', 'Unknown error')
            logger.error(f"M-Pesa request rejected: {response_code} - {error_msg}")
            raise error_cls(f"Request rejected: {error_msg}")

        return response_data

    def initiate_stk_push(
        self,
        phone: str,
        amount: Decimal,
        account_ref: str,
        description: str,
    ) -> Dict[str, Any]:
        """
        Initiate an M-Pesa STK Push payment request.

        Args:
            phone: Customer's phone number in format 254XXXXXXXXX
            amount: Amount to be charged (whole shillings, minimum 1; fractions are refused)
            account_ref: Account reference, max 12 characters
            description: Transaction description, max 13 characters

        Returns:
            Daraja response with MerchantRequestID and CheckoutRequestID

        Raises:
            PaymentError: If payment initiation fails
            ValueError: If input parameters are invalid
        """
        if not phone or len(phone) != 12 or not phone.startswith('254') or not phone.isdigit():
            raise ValueError("Phone number must be 12 digits (254XXXXXXXXX)")
        if amount < 1:
            raise ValueError("Amount must be at least 1")
        if Decimal(amount) != Decimal(amount).to_integral_value():
            raise ValueError(f"STK Push amounts must be whole shillings, got {amount}")
        if not self.config.has_stk_config:
            raise PaymentError("STK Push credentials are not configured")

        password, timestamp = self.generate_password()
        payload = {
            'BusinessShortCode': self.config.mpesa_shortcode,
            'Password': password,
            'Timestamp': timestamp,
            'TransactionType': self.config.mpesa_transaction_type,
            'Amount': int(amount),
            'PartyA': phone,
            'PartyB': self.config.mpesa_shortcode,
            'PhoneNumber': phone,
            'CallBackURL': self.config.mpesa_callback_url,
            'AccountReference': account_ref[:12],
            'TransactionDesc': description[:13]
        }

        logger.info(
            f"Initiating STK Push: Phone={mask_sensitive_data(phone)}, Amount={amount}, Ref={account_ref}"
        )
        response_data = self._post(self.config.mpesa_stk_push_url, payload, PaymentError)

        logger.info(
            f"STK Push initiated successfully - "
            f"CheckoutRequestID: {response_data.get('CheckoutRequestID')}, "
            f"MerchantRequestID: {response_data.get('MerchantRequestID')}"
        )
        return response_data

    def b2c_payout(
        self,
        phone: str,
        amount: Decimal,
        remarks: str,
        occasion: str = "",
    ) -> Dict[str, Any]:
        """
        Send money to a seller with a B2C BusinessPayment request.

        Returns:
            Daraja response with ConversationID and OriginatorConversationID

        Raises:
            PayoutError: If the payout request fails
        """
        if not self.config.has_b2c_config:
            raise PayoutError("B2C credentials are not configured")

        payload = {
            'InitiatorName': self.config.mpesa_initiator_name,
            'SecurityCredential': self.config.mpesa_security_credential,
            'CommandID': 'BusinessPayment',
            'Amount': int(amount),
            'PartyA': self.config.mpesa_shortcode,
            'PartyB': phone,
            'Remarks': remarks[:100],
            'QueueTimeOutURL': self.config.mpesa_timeout_url,
            'ResultURL': self.config.mpesa_b2c_result_url,
            'Occasion': occasion[:100]
        }

        logger.info(f"Initiating B2C payout: Phone={mask_sensitive_data(phone)}, Amount={amount}")
        response_data = self._post(self.config.mpesa_b2c_url, payload, PayoutError)

        logger.info(f"B2C payout accepted - ConversationID: {response_data.get('ConversationID')}")
        return response_data
