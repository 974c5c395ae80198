"""
PayPal Payouts client.

Sends single-item payout batches to truckers via PayPal or Venmo, looks up
batch status for reconciliation and verifies webhook signatures.

Configuration (Flask config / environment):
    PAYPAL_CLIENT_ID, PAYPAL_SECRET  - REST app credentials
    PAYPAL_MODE                      - "sandbox" or "live"
    PAYPAL_WEBHOOK_ID                - enables webhook signature verification
    PAYPAL_TIMEOUT_SECONDS           - bound on every HTTP call
"""
import logging
import time
from dataclasses import dataclass, field

import requests

from bookd.errors import GatewayAuthError, GatewayRejected, GatewayTimeout
from bookd.utils.helpers import money_str

logger = logging.getLogger(__name__)

PAYPAL_LIVE_URL = "https://api-m.paypal.com"
PAYPAL_SANDBOX_URL = "https://api-m.sandbox.paypal.com"

# Refresh a little before PayPal's expires_in so an in-flight call never
# carries a token that dies mid-request
_TOKEN_EXPIRY_MARGIN = 60


@dataclass(frozen=True)
class TransferReceipt:
    batch_id: str
    batch_status: str
    sender_batch_id: str
    raw: dict = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class BatchStatus:
    batch_id: str
    batch_status: str
    item_status: str = None
    error: str = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)


def _error_message(payload, default):
    """Pull a human-readable message out of a PayPal error body."""
    if not isinstance(payload, dict):
        return default
    message = payload.get("message") or payload.get("error_description")
    details = payload.get("details") or []
    if details and isinstance(details, list) and isinstance(details[0], dict):
        issue = details[0].get("issue") or details[0].get("description")
        if issue:
            message = "{} ({})".format(message or default, issue)
    return message or default


class PayPalGateway:
    """Thin PayPal REST client. One instance per app; the OAuth token is cached."""

    def __init__(self, client_id, secret, mode="sandbox", timeout=15, webhook_id=None, session=None):
        self.client_id = client_id
        self.secret = secret
        self.base_url = PAYPAL_LIVE_URL if mode == "live" else PAYPAL_SANDBOX_URL
        self.timeout = timeout
        self.webhook_id = webhook_id
        self.http = session or requests.Session()
        self._token = None
        self._token_expires_at = 0.0

    @classmethod
    def from_config(cls, config):
        return cls(
            client_id=config.get("PAYPAL_CLIENT_ID"),
            secret=config.get("PAYPAL_SECRET"),
            mode=config.get("PAYPAL_MODE", "sandbox"),
            timeout=config.get("PAYPAL_TIMEOUT_SECONDS", 15),
            webhook_id=config.get("PAYPAL_WEBHOOK_ID"),
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _request(self, method, path, **kwargs):
        url = "{}{}".format(self.base_url, path)
        try:
            return self.http.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as exc:
            # The request may have reached PayPal; the caller cannot assume failure
            logger.warning("PayPal %s %s did not complete: %s", method, path, exc)
            raise GatewayTimeout("PayPal did not respond in time; payout outcome unknown")

    @staticmethod
    def _json(response):
        try:
            return response.json()
        except ValueError:
            return {"message": response.text}

    def get_access_token(self):
        """Client-credentials OAuth token (cached until shortly before expiry)."""
        now = time.time()
        if self._token and now < self._token_expires_at:
            return self._token

        if not self.client_id or not self.secret:
            raise GatewayAuthError("PayPal credentials are not configured")

        response = self._request(
            "POST",
            "/v1/oauth2/token",
            auth=(self.client_id, self.secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        if not response.ok:
            logger.error("PayPal token error: status=%d body=%s", response.status_code, response.text)
            raise GatewayAuthError()

        payload = self._json(response)
        self._token = payload["access_token"]
        self._token_expires_at = now + max(0, int(payload.get("expires_in", 0)) - _TOKEN_EXPIRY_MARGIN)
        logger.debug("PayPal access token refreshed (expires_in=%s)", payload.get("expires_in"))
        return self._token

    def _authorized(self, extra=None):
        headers = {
            "Authorization": "Bearer {}".format(self.get_access_token()),
            "Content-Type": "application/json",
        }
        if extra:
            headers.update(extra)
        return headers

    # ------------------------------------------------------------------
    # Payouts
    # ------------------------------------------------------------------
    def submit_transfer(self, idempotency_key, recipient, amount, currency="USD", note=None,
                        recipient_wallet="PAYPAL", sender_item_id=None,
                        email_subject=None, email_message=None):
        """
        Create a single-item payout batch.

        idempotency_key is both the sender_batch_id and the PayPal-Request-Id
        header, so retrying with the same key can never pay twice.

        Returns:
            TransferReceipt

        Raises:
            GatewayRejected: PayPal answered with a non-success status
            GatewayTimeout: no answer within the timeout (outcome unknown)
            GatewayAuthError: OAuth token could not be obtained
        """
        body = {
            "sender_batch_header": {
                "sender_batch_id": idempotency_key,
                "recipient_type": "EMAIL",
                "email_subject": email_subject or "You have a payout!",
                "email_message": email_message or "You have received a payout.",
            },
            "items": [{
                "recipient_type": "EMAIL",
                "amount": {"value": money_str(amount), "currency": currency},
                "receiver": recipient,
                "note": note or "",
                "sender_item_id": sender_item_id or idempotency_key,
                "recipient_wallet": recipient_wallet,
            }],
        }

        logger.info(
            "Submitting PayPal payout: key=%s amount=%s %s wallet=%s",
            idempotency_key, money_str(amount), currency, recipient_wallet,
        )
        response = self._request(
            "POST",
            "/v1/payments/payouts",
            json=body,
            headers=self._authorized({"PayPal-Request-Id": idempotency_key}),
        )
        payload = self._json(response)

        if not response.ok:
            message = _error_message(payload, "PayPal payout failed")
            logger.error("PayPal payout error: status=%d key=%s message=%s", response.status_code, idempotency_key, message)
            raise GatewayRejected(message, status=response.status_code, payload=payload)

        header = payload.get("batch_header") or {}
        batch_id = header.get("payout_batch_id")
        if not batch_id:
            raise GatewayRejected("PayPal response did not include a payout batch id",
                                  status=response.status_code, payload=payload)

        return TransferReceipt(
            batch_id=batch_id,
            batch_status=header.get("batch_status", "PENDING"),
            sender_batch_id=(header.get("sender_batch_header") or {}).get("sender_batch_id", idempotency_key),
            raw=payload,
        )

    def get_payout_batch(self, batch_id):
        """Current status of a payout batch and (single) item."""
        response = self._request("GET", "/v1/payments/payouts/{}".format(batch_id), headers=self._authorized())
        payload = self._json(response)
        if not response.ok:
            raise GatewayRejected(_error_message(payload, "PayPal batch lookup failed"),
                                  status=response.status_code, payload=payload)

        header = payload.get("batch_header") or {}
        items = payload.get("items") or []
        item = items[0] if items else {}
        errors = item.get("errors") or header.get("errors")
        error = None
        if isinstance(errors, dict):
            error = errors.get("message")
        elif isinstance(errors, list) and errors:
            error = errors[0].get("message")

        return BatchStatus(
            batch_id=header.get("payout_batch_id", batch_id),
            batch_status=header.get("batch_status", "PENDING"),
            item_status=item.get("transaction_status"),
            error=error,
            raw=payload,
        )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------
    def verify_webhook_signature(self, headers, event):
        """
        Ask PayPal whether a webhook delivery is authentic.

        Returns True/False; a missing webhook id means verification is off.
        """
        if not self.webhook_id:
            return True

        body = {
            "auth_algo": headers.get("PAYPAL-AUTH-ALGO"),
            "cert_url": headers.get("PAYPAL-CERT-URL"),
            "transmission_id": headers.get("PAYPAL-TRANSMISSION-ID"),
            "transmission_sig": headers.get("PAYPAL-TRANSMISSION-SIG"),
            "transmission_time": headers.get("PAYPAL-TRANSMISSION-TIME"),
            "webhook_id": self.webhook_id,
            "webhook_event": event,
        }
        response = self._request(
            "POST", "/v1/notifications/verify-webhook-signature",
            json=body, headers=self._authorized(),
        )
        if not response.ok:
            logger.error("PayPal signature verification call failed: status=%d", response.status_code)
            return False
        return self._json(response).get("verification_status") == "SUCCESS"
