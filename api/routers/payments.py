"""
Sage Pay Server Bridge -- Payments Router

Endpoints:
  POST /api/v1/payments/register                    -- register a transaction, redirect payer
  POST /api/v1/payments/notification                -- Sage Pay notification callback
  GET  /api/v1/payments/{vendor_tx_code}/complete   -- outcome page the payer lands on

Errors from registration are raised and turned into the standard error
envelope by the handlers registered in app.py. The notification endpoint
answers in Sage Pay's own "Key=Value" format and never uses the envelope.
"""

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from services.completion_url_service import summarize_transaction_outcome
from services.notification_service import get_notification_service
from services.payment_gateway_interface import RawNotificationRequest
from services.registration_service import get_registration_service
from services.transaction_store_service import get_transaction_store

logger = logging.getLogger("sagepay.payments")

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


def error_response(http_status_code, error_code, error_message):
  """Build a standard error envelope."""
  return JSONResponse(
    status_code=http_status_code,
    content={
      "ok": False,
      "data": None,
      "error": {"code": error_code, "message": error_message},
    },
  )


def success_response(data, http_status_code=200):
  """Build a standard success envelope."""
  return JSONResponse(
    status_code=http_status_code,
    content={"ok": True, "data": data, "error": None},
  )


class NotificationAcknowledgementResponse(Response):
  """
  Sends a notification acknowledgement, then finalizes it.

  finalize() runs whether or not the send succeeded. A background task
  would be skipped when the client disconnects mid-send, leaving the
  notification unpersisted and its VendorTxCode locked.
  """

  def __init__(self, acknowledgement):
    super().__init__(
      content=acknowledgement.body,
      status_code=acknowledgement.status_code,
      media_type=acknowledgement.media_type,
    )
    self.acknowledgement = acknowledgement

  async def __call__(self, scope, receive, send):
    try:
      await super().__call__(scope, receive, send)
    finally:
      await self.acknowledgement.finalize()


# =========================================================================
# POST /api/v1/payments/register
# =========================================================================

@router.post("/register")
async def register_transaction(request: Request):
  """
  Register a transaction with Sage Pay and redirect the payer to it.

  Request body (JSON object of Sage Pay fields, VendorTxCode required):
    {
      "VendorTxCode": "ORDER-1001",
      "Amount": "10.00",
      "Currency": "GBP",
      "Description": "Widgets",
      ...
    }

  Response: 303 redirect to the gateway's NextURL, issued only after the
  registration has been stored.
  """
  try:
    transaction_fields = await request.json()
  except Exception:
    return error_response(400, "INVALID_JSON", "Request body must be valid JSON")

  if not isinstance(transaction_fields, dict):
    return error_response(400, "INVALID_JSON", "Request body must be a JSON object of fields")

  next_url = await get_registration_service().register(transaction_fields)
  return RedirectResponse(url=next_url, status_code=303)


# =========================================================================
# POST /api/v1/payments/notification
# =========================================================================

@router.post("/notification")
async def receive_sagepay_notification(request: Request):
  """
  Receive the Sage Pay notification for a registered transaction.

  The raw body is passed through untouched (the signature covers it).
  The acknowledgement is sent first; the notification is persisted once
  the send has finished or failed (see NotificationAcknowledgementResponse).
  """
  raw_body = await request.body()
  raw_request = RawNotificationRequest(raw_body, dict(request.headers))

  acknowledgement = await get_notification_service().handle_notification(raw_request)

  return NotificationAcknowledgementResponse(acknowledgement)


# =========================================================================
# GET /api/v1/payments/{vendor_tx_code}/complete
# =========================================================================

@router.get("/{vendor_tx_code}/complete")
async def show_transaction_outcome(vendor_tx_code: str):
  """
  Where the default completion resolver sends the payer.
  Pending until the notification has been recorded.
  """
  transaction = await get_transaction_store().get(vendor_tx_code)
  return success_response(summarize_transaction_outcome(transaction))
