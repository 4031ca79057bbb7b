"""
Sage Pay Server Bridge -- Database connection pool

Uses mysql-connector-python with a connection pool for concurrent requests.

Schema (created by ensure_transaction_table):
  sagepay_transactions
    vendor_tx_code  VARCHAR(40) PRIMARY KEY
    document        JSON        -- {"registration": {...}, "notification": {...}}
    created_at      DATETIME
    updated_at      DATETIME
"""

import mysql.connector
from mysql.connector import pooling
import config

_connection_pool = None

TRANSACTION_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS sagepay_transactions (
  vendor_tx_code VARCHAR(40) NOT NULL PRIMARY KEY,
  document JSON NOT NULL,
  created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
  updated_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_unicode_ci
"""


def get_connection_pool():
  """Get or create the MySQL connection pool (lazy init)."""
  global _connection_pool
  if _connection_pool is None:
    _connection_pool = pooling.MySQLConnectionPool(
      pool_name="sagepay_bridge_pool",
      pool_size=5,
      pool_reset_session=True,
      host=config.MYSQL_HOST,
      port=config.MYSQL_PORT,
      user=config.MYSQL_USER,
      password=config.MYSQL_PASSWORD,
      database=config.MYSQL_DATABASE,
      charset="utf8mb4",
      collation="utf8mb4_unicode_ci",
      autocommit=False,
    )
  return _connection_pool


def get_database_connection():
  """Get a connection from the pool. Caller must close it when done."""
  pool = get_connection_pool()
  return pool.get_connection()


def execute_query_returning_one_row(query, params=None):
  """Execute a SELECT query and return a single row as dict, or None."""
  connection = get_database_connection()
  try:
    cursor = connection.cursor(dictionary=True)
    cursor.execute(query, params)
    row = cursor.fetchone()
    cursor.close()
    return row
  finally:
    connection.close()


def execute_insert_or_update(query, params=None):
  """Execute an INSERT/UPDATE/DELETE and commit. Returns the affected row count."""
  connection = get_database_connection()
  try:
    cursor = connection.cursor()
    cursor.execute(query, params)
    connection.commit()
    affected_rows = cursor.rowcount
    cursor.close()
    return affected_rows
  except Exception:
    connection.rollback()
    raise
  finally:
    connection.close()


def ensure_transaction_table():
  """Create the sagepay_transactions table if it does not exist."""
  execute_insert_or_update(TRANSACTION_TABLE_DDL)


DatabaseError = mysql.connector.Error
