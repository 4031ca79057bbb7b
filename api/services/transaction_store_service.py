"""
Sage Pay Server Bridge -- Transaction Store

Durable keyed storage for transactions, keyed by VendorTxCode.

A transaction is a plain dict:
  {
    "registration": {"request": {...}, "response": {...}},
    "notification": {"request": {...}, "response": {...}},   # once notified
  }

put() is a full-document overwrite, never a merge. Serialising
read-modify-write per VendorTxCode is the caller's job (see
notification_service.KeyedLockRegistry).
"""

import copy
import json
import logging
from abc import ABC, abstractmethod

import config
from services.sagepay_errors import StorageError, TransactionNotFoundError

logger = logging.getLogger("sagepay.store")


def get_vendor_tx_code(transaction):
  """The storage key of a transaction: its registration request's VendorTxCode."""
  try:
    return transaction["registration"]["request"]["VendorTxCode"]
  except (KeyError, TypeError):
    raise StorageError("Transaction has no registration.request.VendorTxCode") from None


class TransactionStoreInterface(ABC):
  """Abstract base for transaction stores."""

  @abstractmethod
  async def get(self, vendor_tx_code):
    """
    Fetch a transaction.

    Returns: the transaction dict.
    Raises: TransactionNotFoundError if absent, StorageError on failure.
    """
    ...

  @abstractmethod
  async def put(self, transaction):
    """
    Write the whole transaction document, replacing any existing one.

    Raises: StorageError on failure.
    """
    ...


# ---------------------------------------------------------------------------
# In-memory store (development and tests)
# ---------------------------------------------------------------------------

class InMemoryTransactionStore(TransactionStoreInterface):
  """Dict-backed store. Holds deep copies so callers cannot mutate stored state."""

  def __init__(self):
    self._transactions_by_vendor_tx_code = {}

  async def get(self, vendor_tx_code):
    transaction = self._transactions_by_vendor_tx_code.get(vendor_tx_code)
    if transaction is None:
      raise TransactionNotFoundError(vendor_tx_code)
    return copy.deepcopy(transaction)

  async def put(self, transaction):
    vendor_tx_code = get_vendor_tx_code(transaction)
    self._transactions_by_vendor_tx_code[vendor_tx_code] = copy.deepcopy(transaction)


# ---------------------------------------------------------------------------
# MySQL store
# ---------------------------------------------------------------------------

def _get_database():
  """Lazy import to allow unit testing without live DB."""
  import database
  return database


class MySqlTransactionStore(TransactionStoreInterface):
  """Stores each transaction as one JSON document row in sagepay_transactions."""

  async def get(self, vendor_tx_code):
    db = _get_database()
    try:
      row = db.execute_query_returning_one_row(
        "SELECT document FROM sagepay_transactions WHERE vendor_tx_code = %s",
        (vendor_tx_code,),
      )
    except db.DatabaseError as db_error:
      logger.error("Transaction read failed: vendor_tx_code=%s, error=%s", vendor_tx_code, db_error)
      raise StorageError(f"Could not read transaction '{vendor_tx_code}': {db_error}") from db_error

    if row is None:
      raise TransactionNotFoundError(vendor_tx_code)

    document = row["document"]
    if isinstance(document, (bytes, bytearray)):
      document = document.decode("utf-8")
    return json.loads(document)

  async def put(self, transaction):
    db = _get_database()
    vendor_tx_code = get_vendor_tx_code(transaction)
    document = json.dumps(transaction)
    try:
      db.execute_insert_or_update(
        """
        INSERT INTO sagepay_transactions (vendor_tx_code, document)
        VALUES (%s, %s)
        ON DUPLICATE KEY UPDATE document = VALUES(document)
        """,
        (vendor_tx_code, document),
      )
    except db.DatabaseError as db_error:
      logger.error("Transaction write failed: vendor_tx_code=%s, error=%s", vendor_tx_code, db_error)
      raise StorageError(f"Could not write transaction '{vendor_tx_code}': {db_error}") from db_error


# ---------------------------------------------------------------------------
# Module-level singleton
# ---------------------------------------------------------------------------

_transaction_store_singleton = None


def get_transaction_store():
  """Get the configured transaction store singleton."""
  global _transaction_store_singleton
  if _transaction_store_singleton is None:
    if config.TRANSACTION_STORE_BACKEND == "memory":
      logger.warning("Using in-memory transaction store -- transactions are lost on restart")
      _transaction_store_singleton = InMemoryTransactionStore()
    else:
      _transaction_store_singleton = MySqlTransactionStore()
  return _transaction_store_singleton
