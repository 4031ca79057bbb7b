"""
Sage Pay Server Bridge -- Payment Gateway Interface

Abstract base for the gateway client. The registration and notification
orchestrators only talk to this interface, so tests can swap in a fake
and the wire details stay in one place.
"""

from abc import ABC, abstractmethod


class RawNotificationRequest:
  """
  An inbound notification exactly as it arrived: undecoded body bytes plus
  headers. Nothing upstream may consume or re-encode the body, the
  signature covers what the gateway actually sent.
  """

  def __init__(self, body, headers=None):
    self.body = body
    self.headers = dict(headers or {})

  @property
  def content_type(self):
    for name, value in self.headers.items():
      if name.lower() == "content-type":
        return value
    return ""


class PaymentGatewayInterface(ABC):
  """Abstract base for payment gateway clients."""

  @abstractmethod
  async def register(self, fields):
    """
    Submit a transaction registration to the gateway.

    Args:
      fields: Ordered dict of transaction fields (already validated),
        including VendorTxCode.

    Returns: dict of the gateway's reply, with at minimum:
      {
        "Status": "OK",             # OK | OK REPEATED | MALFORMED | INVALID | ERROR
        "StatusDetail": "...",
        "VPSTxId": "{...}",         # gateway transaction id
        "SecurityKey": "...",       # secret used to sign the notification
        "NextURL": "https://...",   # where to send the payer
      }

    Raises: GatewayUnavailableError on transport failure.
    """
    ...

  @abstractmethod
  async def parse_notification(self, raw_request):
    """
    Decode an inbound notification.

    Args:
      raw_request: RawNotificationRequest as received.

    Returns: dict of notification fields (VendorTxCode, VPSTxId, Status,
      VPSSignature, ...).

    Raises: MalformedNotificationError if the body cannot be decoded.
    """
    ...

  @abstractmethod
  def verify_notification_signature(self, vps_tx_id, security_key, notification):
    """
    Check a parsed notification against the secrets from registration.

    Args:
      vps_tx_id: VPSTxId from the stored registration response.
      security_key: SecurityKey from the stored registration response.
      notification: dict returned by parse_notification.

    Returns: True if the signature is valid, False otherwise.
    """
    ...

  @abstractmethod
  def format_notification_response(self, fields):
    """
    Encode the acknowledgement body the gateway expects.

    Args:
      fields: Ordered dict, e.g. {"Status": "OK", "RedirectURL": "..."}.

    Returns: str body.
    """
    ...
