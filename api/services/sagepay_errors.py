"""
Sage Pay Server Bridge -- Error taxonomy

Every failure the bridge knows about has its own exception class and a
stable `code`. The notification handler switches on `code` to decide
which acknowledgement the gateway gets:

  ESAGEPAYNOTFOUND  -> Status=ERROR   (HTTP 200)
  ESAGEPAYINVALID   -> Status=INVALID (HTTP 200)
  anything else     -> fatal channel  (HTTP 500)
"""


class SagePayError(Exception):
  """Base for all bridge errors."""

  code = "ESAGEPAY"

  def __init__(self, message, redirect_url=None):
    super().__init__(message)
    self.redirect_url = redirect_url


class InvalidCharacterError(SagePayError):
  """A field key or value contains a character the gateway does not accept."""

  code = "ESAGEPAYCHAR"

  def __init__(self, message, field_key):
    super().__init__(message)
    self.field_key = field_key


class MissingVendorTxCodeError(SagePayError):
  """Registration fields do not carry a VendorTxCode."""

  code = "ESAGEPAYNOTXCODE"


class GatewayUnavailableError(SagePayError):
  """The gateway could not be reached or answered with a transport-level failure."""

  code = "ESAGEPAYUNAVAILABLE"


class MalformedNotificationError(SagePayError):
  """An inbound notification could not be parsed."""

  code = "ESAGEPAYMALFORMED"


class RegistrationRejectedError(SagePayError):
  """The gateway answered the registration with a status other than OK / OK REPEATED."""

  code = "ESAGEPAYREJECTED"

  def __init__(self, detail, status=None):
    super().__init__(detail)
    self.detail = detail
    self.status = status


class TransactionNotFoundError(SagePayError):
  """No transaction is stored under the given VendorTxCode."""

  code = "ESAGEPAYNOTFOUND"

  def __init__(self, vendor_tx_code, redirect_url=None):
    super().__init__(f"Transaction '{vendor_tx_code}' not found.", redirect_url=redirect_url)
    self.vendor_tx_code = vendor_tx_code


class InvalidSignatureError(SagePayError):
  """The notification signature does not match the stored registration."""

  code = "ESAGEPAYINVALID"

  def __init__(self, message="Signature is not valid.", redirect_url=None):
    super().__init__(message, redirect_url=redirect_url)


class StorageError(SagePayError):
  """The transaction store failed to read or write."""

  code = "ESAGEPAYSTORAGE"
