"""
Sage Pay Server Bridge -- Transaction Registration

Phase (a) of the Server protocol:
  1. Validate the fields (no network call if a character is bad)
  2. Register the transaction with the gateway
  3. Accept only OK / OK REPEATED
  4. Persist {"registration": {"request", "response"}}, unless a document
     is already stored under the VendorTxCode (an OK REPEATED reply must
     not wipe a recorded notification)
  5. Hand back NextURL for the payer redirect

The redirect must only happen after step 4 succeeds: if we cannot store
the transaction we could never recognise its notification, so the payer
must not be sent to pay for it.
"""

import logging

import config
from services.field_validation_service import validate_fields
from services.sagepay_errors import (
  MissingVendorTxCodeError,
  RegistrationRejectedError,
  TransactionNotFoundError,
)

logger = logging.getLogger("sagepay.registration")


class TransactionRegistrationService:
  """Drives the registration phase against an injected gateway and store."""

  def __init__(self, gateway, transaction_store):
    self.gateway = gateway
    self.transaction_store = transaction_store

  async def register(self, transaction_fields):
    """
    Register a transaction and return the gateway's NextURL.

    Raises (unmodified, no retry):
      InvalidCharacterError, MissingVendorTxCodeError -- caller error
      GatewayUnavailableError -- transport failure
      RegistrationRejectedError -- gateway declined, carries StatusDetail
      StorageError -- the registration could not be looked up or stored
    """
    validate_fields(transaction_fields)

    vendor_tx_code = transaction_fields.get("VendorTxCode")
    if vendor_tx_code is None or str(vendor_tx_code) == "":
      raise MissingVendorTxCodeError("VendorTxCode is required for registration.")

    registration_request = dict(transaction_fields)
    registration_response = await self.gateway.register(registration_request)

    status = registration_response.get("Status")
    if status not in config.SAGEPAY_ACCEPTED_REGISTRATION_STATUSES:
      logger.warning(
        "Sage Pay registration rejected: vendor_tx_code=%s, status=%s, detail=%s",
        vendor_tx_code, status, registration_response.get("StatusDetail"),
      )
      raise RegistrationRejectedError(registration_response.get("StatusDetail", ""), status=status)

    existing_transaction = await self._find_stored_transaction(vendor_tx_code)
    if existing_transaction is not None:
      # A stored registration is never replaced, so a recorded notification survives.
      logger.warning(
        "Transaction already stored, keeping it: vendor_tx_code=%s, status=%s, notified=%s",
        vendor_tx_code, status, "notification" in existing_transaction,
      )
      return registration_response["NextURL"]

    await self.transaction_store.put({
      "registration": {
        "request": registration_request,
        "response": registration_response,
      },
    })

    logger.info(
      "Transaction registered: vendor_tx_code=%s, status=%s, vps_tx_id=%s",
      vendor_tx_code, status, registration_response.get("VPSTxId"),
    )
    return registration_response["NextURL"]

  async def _find_stored_transaction(self, vendor_tx_code):
    try:
      return await self.transaction_store.get(vendor_tx_code)
    except TransactionNotFoundError:
      return None


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_registration_service_singleton = None


def get_registration_service():
  """Get the registration service wired to the configured gateway and store."""
  global _registration_service_singleton
  if _registration_service_singleton is None:
    from services.sagepay_gateway_client import get_sagepay_gateway_client
    from services.transaction_store_service import get_transaction_store
    _registration_service_singleton = TransactionRegistrationService(
      gateway=get_sagepay_gateway_client(),
      transaction_store=get_transaction_store(),
    )
  return _registration_service_singleton
