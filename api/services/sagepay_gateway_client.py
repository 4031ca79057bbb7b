"""
Sage Pay Server Bridge -- Sage Pay Server Gateway Client

Sage Pay "Server" integration protocol (VPS protocol 3.00) over direct
HTTP calls via httpx.

Wire format, both directions:
  Requests to the gateway are application/x-www-form-urlencoded.
  Replies from the gateway, and our replies to its notifications, are
  "Key=Value" lines separated by CRLF.

Endpoints used:
  POST {SAGEPAY_GATEWAY_URL}   -- register a transaction
  (inbound) NotificationURL    -- gateway posts the outcome to us
"""

import hashlib
import hmac
import logging
from urllib.parse import parse_qsl

import httpx

import config
from services.field_validation_service import coerce_field_value
from services.payment_gateway_interface import PaymentGatewayInterface
from services.sagepay_errors import GatewayUnavailableError, MalformedNotificationError

logger = logging.getLogger("sagepay.gateway")

# Fields concatenated (in this order) to build the notification signature.
# "VendorName" is not sent by the gateway; it is our own vendor name, lowercased.
NOTIFICATION_SIGNATURE_FIELD_ORDER = (
  "VPSTxId",
  "VendorTxCode",
  "Status",
  "TxAuthNo",
  "VendorName",
  "AVSCV2",
  "SecurityKey",
  "AddressResult",
  "PostCodeResult",
  "CV2Result",
  "GiftAid",
  "3DSecureStatus",
  "CAVV",
  "AddressStatus",
  "PayerStatus",
  "CardType",
  "Last4Digits",
  "DeclineCode",
  "ExpiryDate",
  "FraudResponse",
  "BankAuthCode",
)

REQUIRED_NOTIFICATION_FIELDS = ("VendorTxCode", "VPSTxId", "Status", "VPSSignature")


# ---------------------------------------------------------------------------
# Key=Value wire helpers
# ---------------------------------------------------------------------------

def parse_key_value_lines(body_text):
  """
  Parse a "Key=Value" CRLF body into an ordered dict.
  Splits on the first "=" only (NextURL values contain "=").
  Lines without "=" are ignored.
  """
  parsed = {}
  for line in body_text.splitlines():
    if "=" not in line:
      continue
    key, value = line.split("=", 1)
    parsed[key.strip()] = value.strip()
  return parsed


def format_key_value_lines(fields):
  """Encode a dict as "Key=Value" lines joined by CRLF, skipping None values."""
  return "\r\n".join(
    f"{key}={value}" for key, value in fields.items() if value is not None
  )


def compute_notification_signature(vendor_name, vps_tx_id, security_key, notification):
  """
  Compute the upper-case MD5 hex signature Sage Pay puts in VPSSignature.

  VPSTxId and SecurityKey come from our stored registration, never from the
  notification, so a forged notification cannot supply its own secret.
  """
  signature_source = dict(notification)
  signature_source["VPSTxId"] = vps_tx_id
  signature_source["SecurityKey"] = security_key
  signature_source["VendorName"] = (vendor_name or "").lower()

  message = "".join(
    str(signature_source.get(field_name) or "") for field_name in NOTIFICATION_SIGNATURE_FIELD_ORDER
  )
  return hashlib.md5(message.encode("utf-8")).hexdigest().upper()


class SagePayGatewayClient(PaymentGatewayInterface):
  """Sage Pay Server protocol gateway client."""

  def __init__(self):
    self.registration_url = config.SAGEPAY_GATEWAY_URL
    self.vendor_name = config.SAGEPAY_VENDOR_NAME
    self.vps_protocol = config.SAGEPAY_VPS_PROTOCOL
    self.default_tx_type = config.SAGEPAY_DEFAULT_TX_TYPE
    self.notification_url = config.SAGEPAY_NOTIFICATION_URL
    self.timeout_seconds = config.SAGEPAY_HTTP_TIMEOUT_SECONDS

  # -----------------------------------------------------------------------
  # Register transaction
  # -----------------------------------------------------------------------

  def _build_registration_payload(self, fields):
    """
    Protocol fields first, caller's fields override the defaults. Vendor is
    the exception: notifications are verified against the configured vendor
    name, so a registration under any other name could never be verified.
    """
    payload = {
      "VPSProtocol": self.vps_protocol,
      "TxType": self.default_tx_type,
      "NotificationURL": self.notification_url,
    }
    for key, value in fields.items():
      payload[key] = coerce_field_value(value)

    requested_vendor = payload.get("Vendor")
    if requested_vendor is not None and requested_vendor != self.vendor_name:
      logger.warning(
        "Ignoring Vendor field on registration: vendor_tx_code=%s, requested=%s, configured=%s",
        payload.get("VendorTxCode", ""), requested_vendor, self.vendor_name,
      )
    payload["Vendor"] = self.vendor_name
    return payload

  async def register(self, fields):
    """
    POST the transaction to the registration URL and parse the reply.

    The gateway answers 200 with a Status field for business-level
    failures (MALFORMED, INVALID, ERROR); those are returned as-is for the
    caller to judge. Only transport failures and non-2xx answers raise.
    """
    payload = self._build_registration_payload(fields)
    vendor_tx_code = payload.get("VendorTxCode", "")

    try:
      async with httpx.AsyncClient(timeout=self.timeout_seconds) as http_client:
        response = await http_client.post(
          self.registration_url,
          data=payload,
          headers={"Accept": "text/plain"},
        )
        response.raise_for_status()
    except httpx.HTTPStatusError as status_error:
      logger.error(
        "Sage Pay registration HTTP error: vendor_tx_code=%s, status=%s",
        vendor_tx_code, status_error.response.status_code,
      )
      raise GatewayUnavailableError(
        f"Sage Pay answered HTTP {status_error.response.status_code}"
      ) from status_error
    except httpx.HTTPError as transport_error:
      logger.error(
        "Sage Pay registration transport error: vendor_tx_code=%s, error=%s",
        vendor_tx_code, transport_error,
      )
      raise GatewayUnavailableError(f"Sage Pay unreachable: {transport_error}") from transport_error

    reply = parse_key_value_lines(response.text)

    logger.info(
      "Sage Pay registration answered: vendor_tx_code=%s, status=%s, vps_tx_id=%s",
      vendor_tx_code, reply.get("Status"), reply.get("VPSTxId"),
    )
    return reply

  # -----------------------------------------------------------------------
  # Parse notification
  # -----------------------------------------------------------------------

  async def parse_notification(self, raw_request):
    """Decode the form-encoded notification body."""
    body = raw_request.body
    if not body:
      raise MalformedNotificationError("Notification body is empty.")

    if isinstance(body, (bytes, bytearray)):
      try:
        body = bytes(body).decode("utf-8")
      except UnicodeDecodeError as decode_error:
        raise MalformedNotificationError("Notification body is not valid UTF-8.") from decode_error

    try:
      notification = dict(parse_qsl(body, keep_blank_values=True, strict_parsing=True))
    except ValueError as parse_error:
      raise MalformedNotificationError(f"Notification body is not form-encoded: {parse_error}") from parse_error

    missing_fields = [name for name in REQUIRED_NOTIFICATION_FIELDS if not notification.get(name)]
    if missing_fields:
      raise MalformedNotificationError(
        "Notification is missing required fields: " + ", ".join(missing_fields)
      )

    return notification

  # -----------------------------------------------------------------------
  # Verify notification signature
  # -----------------------------------------------------------------------

  def verify_notification_signature(self, vps_tx_id, security_key, notification):
    """
    Recompute the MD5 signature from our stored secrets and compare it,
    in constant time, with the VPSSignature the gateway sent.
    """
    if not vps_tx_id or not security_key:
      logger.warning("Sage Pay signature check without stored VPSTxId/SecurityKey")
      return False

    # Notification for a different gateway transaction than the one we registered
    if notification.get("VPSTxId", "") != vps_tx_id:
      logger.warning(
        "Sage Pay notification VPSTxId mismatch: vendor_tx_code=%s",
        notification.get("VendorTxCode"),
      )
      return False

    expected_signature = compute_notification_signature(
      self.vendor_name, vps_tx_id, security_key, notification,
    )
    received_signature = (notification.get("VPSSignature") or "").upper()
    return hmac.compare_digest(
      expected_signature.encode("utf-8"), received_signature.encode("utf-8"),
    )

  # -----------------------------------------------------------------------
  # Format acknowledgement
  # -----------------------------------------------------------------------

  def format_notification_response(self, fields):
    return format_key_value_lines(fields)


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_sagepay_gateway_singleton = None


def get_sagepay_gateway_client():
  """Get the Sage Pay gateway client singleton."""
  global _sagepay_gateway_singleton
  if _sagepay_gateway_singleton is None:
    _sagepay_gateway_singleton = SagePayGatewayClient()
  return _sagepay_gateway_singleton
