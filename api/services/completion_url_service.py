"""
Sage Pay Server Bridge -- Completion URL

After a verified notification the gateway redirects the payer to whatever
RedirectURL we send back. The host application can supply its own
resolver; this module provides the default, which points at our own
completion endpoint, and the outcome summary that endpoint shows.
"""

from urllib.parse import quote

import config


def resolve_default_completion_url(raw_request, transaction):
  """Completion page for the transaction on this service."""
  vendor_tx_code = transaction["registration"]["request"]["VendorTxCode"]
  return f"{config.PUBLIC_BASE_URL}/api/v1/payments/{quote(str(vendor_tx_code), safe='')}/complete"


def summarize_transaction_outcome(transaction):
  """
  Reduce a stored transaction to what a payer-facing page may show.
  Never includes SecurityKey, VPSSignature or card data.
  """
  registration_request = transaction["registration"]["request"]
  notification = transaction.get("notification")

  if not notification:
    return {
      "vendor_tx_code": registration_request.get("VendorTxCode"),
      "state": "pending",
      "gateway_status": None,
      "gateway_status_detail": None,
      "amount": registration_request.get("Amount"),
      "currency": registration_request.get("Currency"),
    }

  notification_request = notification["request"]
  return {
    "vendor_tx_code": registration_request.get("VendorTxCode"),
    "state": "notified",
    "gateway_status": notification_request.get("Status"),
    "gateway_status_detail": notification_request.get("StatusDetail"),
    "amount": registration_request.get("Amount"),
    "currency": registration_request.get("Currency"),
  }
