"""
Sage Pay Server Bridge -- Notification Handling

Phase (b) of the Server protocol. The gateway POSTs the outcome of a
transaction to our NotificationURL and expects a "Key=Value" reply telling
it whether we accepted the notification and where to send the payer.

Flow:
  1. Parse the raw notification (failure is raised, there is nothing
     sensible to acknowledge)
  2. Look up the transaction by VendorTxCode
  3. Verify the signature with the stored VPSTxId + SecurityKey
  4. Resolve the completion RedirectURL (host-supplied)
  5. Format Status=OK and hand it to the host to SEND
  6. Only then attach the notification and persist it

Step 6 runs in NotificationAcknowledgement.finalize(), which the host calls
after the response has gone out. This is the opposite order to
registration on purpose: the gateway wants a prompt answer, and a storage
failure after the answer is sent can only be logged.

Handled errors become a 200 reply (the gateway requires 200):
  ESAGEPAYNOTFOUND -> Status=ERROR
  ESAGEPAYINVALID  -> Status=INVALID
Everything else is raised to the host's fatal error handler (HTTP 500).

The redirect field is spelled "RedirectURL" in every reply, success and
error alike, as the gateway documents it. Older integrations sent
"RedirectUrl" on success; the gateway reads the field under its
documented name, so one spelling is used throughout.

Concurrency: steps 2-6 for one VendorTxCode are serialised by a per-key
asyncio lock held until finalize() finishes, so a gateway retry racing the
original cannot overwrite its notification. This only covers one process;
multiple workers need serialisation in the store or in front of the app.
"""

import asyncio
import inspect
import logging

import config
from services.sagepay_errors import InvalidSignatureError, SagePayError

logger = logging.getLogger("sagepay.notification")

# Error code -> Status we send back. Anything not listed goes to the fatal channel.
HANDLED_ERROR_RESPONSE_STATUSES = {
  "ESAGEPAYNOTFOUND": "ERROR",
  "ESAGEPAYINVALID": "INVALID",
}


# ---------------------------------------------------------------------------
# Per-VendorTxCode locking
# ---------------------------------------------------------------------------

class KeyedLockRegistry:
  """
  asyncio.Lock per key, created on demand and dropped when nobody holds or
  waits for it. Acquire and release are separate calls because the lock
  outlives handle_notification() until the acknowledgement is finalized.
  """

  def __init__(self):
    self._locks = {}
    self._holder_counts = {}

  async def acquire(self, key):
    lock = self._locks.get(key)
    if lock is None:
      lock = asyncio.Lock()
      self._locks[key] = lock
    self._holder_counts[key] = self._holder_counts.get(key, 0) + 1
    try:
      await lock.acquire()
    except BaseException:
      self._forget(key)
      raise

  def release(self, key):
    self._locks[key].release()
    self._forget(key)

  def is_locked(self, key):
    lock = self._locks.get(key)
    return lock is not None and lock.locked()

  def _forget(self, key):
    remaining = self._holder_counts[key] - 1
    if remaining:
      self._holder_counts[key] = remaining
    else:
      del self._holder_counts[key]
      del self._locks[key]


# ---------------------------------------------------------------------------
# Acknowledgement
# ---------------------------------------------------------------------------

class NotificationAcknowledgement:
  """
  The reply to send to the gateway, plus the deferred persistence step.

  The host sends `body` with `status_code`, then awaits finalize().
  finalize() never raises and is safe to call more than once.
  """

  media_type = "text/plain"

  def __init__(self, status_code, body, response_fields, persist=None):
    self.status_code = status_code
    self.body = body
    self.response_fields = response_fields
    self._persist = persist
    self._on_finalized = None
    self._finalized = False

  @property
  def is_accepted(self):
    return self.response_fields.get("Status") == "OK"

  async def finalize(self):
    if self._finalized:
      return
    self._finalized = True
    try:
      if self._persist is not None:
        await self._persist()
    except Exception:
      # The gateway already has its answer; nothing left to do but record it.
      logger.exception("Failed to persist notification after acknowledging it")
    finally:
      if self._on_finalized is not None:
        self._on_finalized()


async def _call_completion_url_resolver(resolver, raw_request, transaction):
  """Host resolvers may be plain functions or coroutines."""
  result = resolver(raw_request, transaction)
  if inspect.isawaitable(result):
    result = await result
  return result


class NotificationHandlingService:
  """Drives the notification phase against an injected gateway, store and resolver."""

  def __init__(
    self,
    gateway,
    transaction_store,
    resolve_completion_url,
    failure_redirect_url=None,
    lock_registry=None,
  ):
    self.gateway = gateway
    self.transaction_store = transaction_store
    self.resolve_completion_url = resolve_completion_url
    self.failure_redirect_url = failure_redirect_url or None
    self.lock_registry = lock_registry or KeyedLockRegistry()

  async def handle_notification(self, raw_request):
    """
    Process one inbound notification.

    Returns: NotificationAcknowledgement (200 with Status OK/ERROR/INVALID).
    Raises: MalformedNotificationError if parsing fails, and any other
      unhandled error (including failures while building an ERROR/INVALID
      reply) for the host's fatal error handler.
    """
    notification = await self.gateway.parse_notification(raw_request)
    vendor_tx_code = notification["VendorTxCode"]

    await self.lock_registry.acquire(vendor_tx_code)
    try:
      try:
        acknowledgement = await self._accept_notification(raw_request, notification)
      except SagePayError as handled_error:
        response_status = HANDLED_ERROR_RESPONSE_STATUSES.get(handled_error.code)
        if response_status is None:
          raise
        acknowledgement = self._build_error_acknowledgement(
          vendor_tx_code, response_status, handled_error,
        )
    except BaseException:
      self.lock_registry.release(vendor_tx_code)
      raise

    acknowledgement._on_finalized = lambda: self.lock_registry.release(vendor_tx_code)
    return acknowledgement

  async def _accept_notification(self, raw_request, notification):
    vendor_tx_code = notification["VendorTxCode"]
    transaction = await self.transaction_store.get(vendor_tx_code)

    registration_response = transaction["registration"]["response"]
    signature_valid = self.gateway.verify_notification_signature(
      registration_response.get("VPSTxId"),
      registration_response.get("SecurityKey"),
      notification,
    )
    if not signature_valid:
      raise InvalidSignatureError()

    redirect_url = await _call_completion_url_resolver(
      self.resolve_completion_url, raw_request, transaction,
    )

    response_fields = {
      "Status": "OK",
      "RedirectURL": redirect_url,
    }
    body = self.gateway.format_notification_response(response_fields)

    if transaction.get("notification"):
      logger.info(
        "Sage Pay notification replayed: vendor_tx_code=%s, status=%s (already recorded, not rewritten)",
        vendor_tx_code, notification.get("Status"),
      )
      return NotificationAcknowledgement(200, body, response_fields)

    async def persist_notification():
      transaction["notification"] = {
        "request": notification,
        "response": response_fields,
      }
      await self.transaction_store.put(transaction)
      logger.info(
        "Sage Pay notification recorded: vendor_tx_code=%s, status=%s",
        vendor_tx_code, notification.get("Status"),
      )

    logger.info(
      "Sage Pay notification accepted: vendor_tx_code=%s, status=%s",
      vendor_tx_code, notification.get("Status"),
    )
    return NotificationAcknowledgement(200, body, response_fields, persist=persist_notification)

  def _build_error_acknowledgement(self, vendor_tx_code, response_status, handled_error):
    """
    Build the Status=ERROR / Status=INVALID reply. A failure in here is
    raised (chained to the original error) so it reaches the fatal handler.
    """
    try:
      response_fields = {"Status": response_status}
      redirect_url = handled_error.redirect_url or self.failure_redirect_url
      if redirect_url:
        response_fields["RedirectURL"] = redirect_url
      response_fields["StatusDetail"] = str(handled_error)
      body = self.gateway.format_notification_response(response_fields)
    except Exception as build_error:
      logger.error(
        "Could not build Sage Pay %s reply: vendor_tx_code=%s, error=%s",
        response_status, vendor_tx_code, build_error,
      )
      raise build_error from handled_error

    logger.warning(
      "Sage Pay notification error: vendor_tx_code=%s, status=%s, detail=%s",
      vendor_tx_code, response_status, response_fields["StatusDetail"],
    )
    return NotificationAcknowledgement(200, body, response_fields)


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_notification_service_singleton = None


def get_notification_service():
  """Get the notification service wired to the configured collaborators."""
  global _notification_service_singleton
  if _notification_service_singleton is None:
    from services.completion_url_service import resolve_default_completion_url
    from services.sagepay_gateway_client import get_sagepay_gateway_client
    from services.transaction_store_service import get_transaction_store
    _notification_service_singleton = NotificationHandlingService(
      gateway=get_sagepay_gateway_client(),
      transaction_store=get_transaction_store(),
      resolve_completion_url=resolve_default_completion_url,
      failure_redirect_url=config.SAGEPAY_FAILURE_REDIRECT_URL,
    )
  return _notification_service_singleton
