"""
Sage Pay Server Bridge -- Configuration

All configuration values with sensible defaults.
Override via environment variables or the systemd unit's EnvironmentFile.
"""

import os

# --- MySQL Database ---
MYSQL_HOST = os.environ.get("BRIDGE_DB_HOST", "127.0.0.1")
MYSQL_PORT = int(os.environ.get("BRIDGE_DB_PORT", "3306"))
MYSQL_USER = os.environ.get("BRIDGE_DB_USER", "sagepay")
# SECURITY: No hardcoded default -- must be set via environment variable or systemd unit
MYSQL_PASSWORD = os.environ.get("BRIDGE_DB_PASSWORD", "")
MYSQL_DATABASE = os.environ.get("BRIDGE_DB_NAME", "sagepay")

# --- Transaction Store ---
# "mysql" for production, "memory" for local development only
# (the in-memory store loses everything on restart).
TRANSACTION_STORE_BACKEND = os.environ.get("BRIDGE_STORE_BACKEND", "mysql")

# --- API Settings ---
API_VERSION = "0.3.0"
API_HOST = os.environ.get("BRIDGE_API_HOST", "127.0.0.1")
API_PORT = int(os.environ.get("BRIDGE_API_PORT", "8190"))

# --- Public URL (for NotificationURL and completion redirects) ---
PUBLIC_BASE_URL = os.environ.get("BRIDGE_PUBLIC_URL", "http://127.0.0.1:8190")

# --- Sage Pay Server gateway ---
SAGEPAY_TEST_REGISTRATION_URL = "https://test.sagepay.com/gateway/service/vspserver-register.vsp"
SAGEPAY_LIVE_REGISTRATION_URL = "https://live.sagepay.com/gateway/service/vspserver-register.vsp"

# "test" or "live". Anything other than "live" talks to the test system.
SAGEPAY_MODE = os.environ.get("SAGEPAY_MODE", "test")
SAGEPAY_GATEWAY_URL = os.environ.get(
  "SAGEPAY_GATEWAY_URL",
  SAGEPAY_LIVE_REGISTRATION_URL if SAGEPAY_MODE == "live" else SAGEPAY_TEST_REGISTRATION_URL,
)

# SECURITY: No hardcoded default -- the vendor name is part of the notification signature
SAGEPAY_VENDOR_NAME = os.environ.get("SAGEPAY_VENDOR_NAME", "")
SAGEPAY_VPS_PROTOCOL = os.environ.get("SAGEPAY_VPS_PROTOCOL", "3.00")
SAGEPAY_DEFAULT_TX_TYPE = os.environ.get("SAGEPAY_TX_TYPE", "PAYMENT")
SAGEPAY_NOTIFICATION_URL = os.environ.get(
  "SAGEPAY_NOTIFICATION_URL",
  f"{PUBLIC_BASE_URL}/api/v1/payments/notification",
)
SAGEPAY_HTTP_TIMEOUT_SECONDS = float(os.environ.get("SAGEPAY_HTTP_TIMEOUT_SECONDS", "30"))

# Where the gateway sends the payer when we answer ERROR/INVALID.
# Empty means no RedirectURL is proposed on handled errors.
SAGEPAY_FAILURE_REDIRECT_URL = os.environ.get("SAGEPAY_FAILURE_REDIRECT_URL", "")

# Registration statuses that mean the gateway accepted the transaction
SAGEPAY_ACCEPTED_REGISTRATION_STATUSES = ("OK", "OK REPEATED")
