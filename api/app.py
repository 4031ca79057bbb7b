"""
Sage Pay Server Bridge API

Registers merchant transactions with the Sage Pay Server gateway and
handles the gateway's notification callbacks.
Port 8190.

Endpoints:
  /api/health                                   -- health check
  /api/v1/status                                -- API status and capabilities
  /api/v1/payments/register                     -- register transaction, redirect payer
  /api/v1/payments/notification                 -- Sage Pay notification callback
  /api/v1/payments/{vendor_tx_code}/complete    -- transaction outcome
  /api/docs                                     -- Swagger UI documentation

Run with:
    uvicorn app:app --host 127.0.0.1 --port 8190
"""

import datetime
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

import config
from routers import payments
from services.sagepay_errors import (
  GatewayUnavailableError,
  InvalidCharacterError,
  MissingVendorTxCodeError,
  RegistrationRejectedError,
  StorageError,
  TransactionNotFoundError,
)

# --- Logging ---
logging.basicConfig(
  level=logging.INFO,
  format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger("sagepay.api")

# --- FastAPI app ---
app = FastAPI(
  title="Sage Pay Server Bridge API",
  description="Transaction registration and notification handling "
              "for the Sage Pay Server integration protocol.",
  version=config.API_VERSION,
  docs_url="/api/docs",
  redoc_url="/api/redoc",
  openapi_url="/api/openapi.json",
)

# --- Register routers ---
app.include_router(payments.router)


# --- Error handlers ---
# Registration errors go back to the merchant as the standard envelope.
# Anything else, including unhandled notification failures, is fatal: 500.

@app.exception_handler(InvalidCharacterError)
async def handle_invalid_character(request: Request, error: InvalidCharacterError):
  logger.info("Rejected fields with invalid characters: key=%s", error.field_key)
  return payments.error_response(400, "INVALID_CHARACTER", str(error))


@app.exception_handler(MissingVendorTxCodeError)
async def handle_missing_vendor_tx_code(request: Request, error: MissingVendorTxCodeError):
  return payments.error_response(400, "VENDOR_TX_CODE_REQUIRED", str(error))


@app.exception_handler(RegistrationRejectedError)
async def handle_registration_rejected(request: Request, error: RegistrationRejectedError):
  return payments.error_response(402, "REGISTRATION_REJECTED", error.detail)


@app.exception_handler(GatewayUnavailableError)
async def handle_gateway_unavailable(request: Request, error: GatewayUnavailableError):
  return payments.error_response(503, "GATEWAY_UNAVAILABLE", str(error))


@app.exception_handler(TransactionNotFoundError)
async def handle_transaction_not_found(request: Request, error: TransactionNotFoundError):
  return payments.error_response(404, "TRANSACTION_NOT_FOUND", str(error))


@app.exception_handler(StorageError)
async def handle_storage_error(request: Request, error: StorageError):
  logger.error("Transaction store failure on %s %s: %s", request.method, request.url.path, error)
  return payments.error_response(500, "STORAGE_ERROR", "Transaction storage failed")


@app.exception_handler(Exception)
async def handle_fatal_error(request: Request, error: Exception):
  logger.error(
    "Fatal error on %s %s", request.method, request.url.path,
    exc_info=(type(error), error, error.__traceback__),
  )
  return PlainTextResponse("Internal Server Error", status_code=500)


# --- Health and status ---

class HealthResponse(BaseModel):
  status: str
  service: str
  version: str
  timestamp: str
  gateway_url: str
  store_backend: str


@app.get("/api/health", response_model=HealthResponse)
async def health_check():
  """Health check endpoint for monitoring and load balancers."""
  return HealthResponse(
    status="healthy",
    service="sagepay-server-bridge",
    version=config.API_VERSION,
    timestamp=datetime.datetime.now(datetime.timezone.utc).isoformat(),
    gateway_url=config.SAGEPAY_GATEWAY_URL,
    store_backend=config.TRANSACTION_STORE_BACKEND,
  )


@app.get("/api/v1/status")
async def api_status():
  """API status and capabilities."""
  return JSONResponse(
    content={
      "ok": True,
      "data": {
        "status": "operational",
        "version": config.API_VERSION,
        "sagepay_mode": config.SAGEPAY_MODE,
        "vps_protocol": config.SAGEPAY_VPS_PROTOCOL,
        "capabilities": [
          "health-check",
          "transaction-registration",
          "transaction-notification",
          "transaction-outcome",
        ],
        "endpoints": {
          "health": "/api/health",
          "register": "/api/v1/payments/register",
          "notification": "/api/v1/payments/notification",
          "outcome": "/api/v1/payments/{vendor_tx_code}/complete",
          "docs": "/api/docs",
        },
      },
      "error": None,
    }
  )


if __name__ == "__main__":
  import uvicorn
  if config.TRANSACTION_STORE_BACKEND == "mysql":
    import database
    database.ensure_transaction_table()
  logger.info("Starting Sage Pay Server Bridge API on %s:%d", config.API_HOST, config.API_PORT)
  uvicorn.run(app, host=config.API_HOST, port=config.API_PORT)
