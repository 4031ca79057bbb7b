"""
Unit tests for sagepay_gateway_client.py -- the Sage Pay Server wire protocol.

Tests cover:
  1. Key=Value CRLF encoding and decoding
  2. Registration POST (payload defaults, reply parsing, transport failures)
  3. Notification parsing (form-encoded body, required fields)
  4. Notification signature computation and verification

No real network calls: httpx.MockTransport stands in for the gateway.
"""

import asyncio
import hashlib
import os
import sys
from unittest.mock import patch
from urllib.parse import parse_qs, urlencode

import httpx
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from services import sagepay_gateway_client
from services.payment_gateway_interface import PaymentGatewayInterface, RawNotificationRequest
from services.sagepay_errors import GatewayUnavailableError, MalformedNotificationError


def _make_client(vendor_name="testvendor"):
  with patch("config.SAGEPAY_VENDOR_NAME", vendor_name), \
       patch("config.SAGEPAY_GATEWAY_URL", "https://test.sagepay.com/gateway/service/vspserver-register.vsp"), \
       patch("config.SAGEPAY_NOTIFICATION_URL", "https://merchant.example/api/v1/payments/notification"):
    return sagepay_gateway_client.SagePayGatewayClient()


def _register_against(client, handler, fields):
  """Run client.register with every httpx.AsyncClient routed to `handler`."""
  real_async_client = httpx.AsyncClient

  def client_factory(**kwargs):
    return real_async_client(transport=httpx.MockTransport(handler), **kwargs)

  with patch("services.sagepay_gateway_client.httpx.AsyncClient", side_effect=client_factory):
    return asyncio.run(client.register(fields))


def _signed_notification(vendor_name="testvendor", vps_tx_id="{V1}", security_key="K1", **overrides):
  notification = {
    "VPSProtocol": "3.00",
    "TxType": "PAYMENT",
    "VendorTxCode": "TX1",
    "VPSTxId": vps_tx_id,
    "Status": "OK",
    "StatusDetail": "0000 : The Authorisation was Successful.",
    "TxAuthNo": "8152",
    "AVSCV2": "ALL MATCH",
    "AddressResult": "MATCHED",
    "PostCodeResult": "MATCHED",
    "CV2Result": "MATCHED",
    "GiftAid": "0",
    "3DSecureStatus": "OK",
    "CAVV": "AAABARR5kwAAAAAAAAAAAAAAAAA=",
    "CardType": "VISA",
    "Last4Digits": "0006",
    "DeclineCode": "00",
    "ExpiryDate": "1230",
    "BankAuthCode": "999777",
  }
  notification.update(overrides)
  notification["VPSSignature"] = sagepay_gateway_client.compute_notification_signature(
    vendor_name, vps_tx_id, security_key, notification,
  )
  return notification


# ===========================================================================
# Test: Key=Value wire helpers
# ===========================================================================

class TestKeyValueLines:

  def test_parse_reply_with_crlf(self):
    parsed = sagepay_gateway_client.parse_key_value_lines(
      "VPSProtocol=3.00\r\nStatus=OK\r\nStatusDetail=2014 : The Transaction was Registered Successfully.\r\n"
    )
    assert parsed == {
      "VPSProtocol": "3.00",
      "Status": "OK",
      "StatusDetail": "2014 : The Transaction was Registered Successfully.",
    }

  def test_parse_splits_on_first_equals_only(self):
    parsed = sagepay_gateway_client.parse_key_value_lines(
      "NextURL=https://test.sagepay.com/gateway/service/cardselection?vpstxid={ABC}"
    )
    assert parsed["NextURL"] == "https://test.sagepay.com/gateway/service/cardselection?vpstxid={ABC}"

  def test_parse_ignores_lines_without_equals(self):
    assert sagepay_gateway_client.parse_key_value_lines("garbage\nStatus=OK\n\n") == {"Status": "OK"}

  def test_format_joins_with_crlf_and_keeps_order(self):
    body = sagepay_gateway_client.format_key_value_lines({
      "Status": "OK",
      "RedirectURL": "https://merchant/thanks",
    })
    assert body == "Status=OK\r\nRedirectURL=https://merchant/thanks"

  def test_format_skips_none_values(self):
    body = sagepay_gateway_client.format_key_value_lines({"Status": "ERROR", "RedirectURL": None})
    assert body == "Status=ERROR"

  def test_client_formats_notification_response(self):
    client = _make_client()
    assert client.format_notification_response({"Status": "INVALID", "StatusDetail": "x"}) == \
      "Status=INVALID\r\nStatusDetail=x"


# ===========================================================================
# Test: Registration
# ===========================================================================

class TestRegistration:

  def test_client_implements_interface(self):
    assert issubclass(sagepay_gateway_client.SagePayGatewayClient, PaymentGatewayInterface)

  def test_client_reads_config(self):
    client = _make_client("myshop")
    assert client.vendor_name == "myshop"
    assert client.registration_url.startswith("https://test.sagepay.com/")
    assert client.notification_url == "https://merchant.example/api/v1/payments/notification"

  def test_register_posts_form_with_protocol_defaults(self):
    client = _make_client()
    captured_requests = []

    def handler(request):
      captured_requests.append(request)
      return httpx.Response(
        200,
        text="VPSProtocol=3.00\r\nStatus=OK\r\nStatusDetail=Registered\r\n"
             "VPSTxId={V1}\r\nSecurityKey=K1\r\nNextURL=https://gw/pay/1\r\n",
      )

    reply = _register_against(client, handler, {"VendorTxCode": "TX1", "Amount": "10.00"})

    assert reply == {
      "VPSProtocol": "3.00",
      "Status": "OK",
      "StatusDetail": "Registered",
      "VPSTxId": "{V1}",
      "SecurityKey": "K1",
      "NextURL": "https://gw/pay/1",
    }
    assert len(captured_requests) == 1
    sent_request = captured_requests[0]
    assert sent_request.method == "POST"
    assert str(sent_request.url) == "https://test.sagepay.com/gateway/service/vspserver-register.vsp"
    sent_form = parse_qs(sent_request.content.decode("utf-8"))
    assert sent_form["VPSProtocol"] == ["3.00"]
    assert sent_form["TxType"] == ["PAYMENT"]
    assert sent_form["Vendor"] == ["testvendor"]
    assert sent_form["NotificationURL"] == ["https://merchant.example/api/v1/payments/notification"]
    assert sent_form["VendorTxCode"] == ["TX1"]
    assert sent_form["Amount"] == ["10.00"]

  def test_caller_fields_override_defaults(self):
    client = _make_client()
    captured_forms = []

    def handler(request):
      captured_forms.append(parse_qs(request.content.decode("utf-8")))
      return httpx.Response(200, text="Status=OK\r\nNextURL=https://gw/pay/2")

    _register_against(client, handler, {"VendorTxCode": "TX2", "TxType": "DEFERRED"})
    assert captured_forms[0]["TxType"] == ["DEFERRED"]

  def test_vendor_is_always_the_configured_one(self):
    client = _make_client("myshop")
    captured_forms = []

    def handler(request):
      captured_forms.append(parse_qs(request.content.decode("utf-8")))
      return httpx.Response(200, text="Status=OK\r\nVPSTxId={V3}\r\nSecurityKey=K3\r\nNextURL=https://gw/pay/3")

    reply = _register_against(client, handler, {"VendorTxCode": "TX3", "Vendor": "othershop"})

    assert captured_forms[0]["Vendor"] == ["myshop"]
    notification = _signed_notification(vendor_name="myshop", vps_tx_id="{V3}", security_key="K3", VendorTxCode="TX3")
    assert client.verify_notification_signature(reply["VPSTxId"], reply["SecurityKey"], notification)

  def test_business_failure_is_returned_not_raised(self):
    client = _make_client()

    def handler(request):
      return httpx.Response(200, text="Status=INVALID\r\nStatusDetail=3048 : The CardNumber length is invalid.")

    reply = _register_against(client, handler, {"VendorTxCode": "TX3"})
    assert reply["Status"] == "INVALID"

  def test_transport_error_raises_gateway_unavailable(self):
    client = _make_client()

    def handler(request):
      raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayUnavailableError):
      _register_against(client, handler, {"VendorTxCode": "TX4"})

  def test_http_error_status_raises_gateway_unavailable(self):
    client = _make_client()

    def handler(request):
      return httpx.Response(503, text="Service Unavailable")

    with pytest.raises(GatewayUnavailableError) as error_info:
      _register_against(client, handler, {"VendorTxCode": "TX5"})
    assert "503" in str(error_info.value)


# ===========================================================================
# Test: Notification parsing
# ===========================================================================

class TestNotificationParsing:

  def test_parses_form_encoded_body(self):
    client = _make_client()
    notification = _signed_notification()
    raw_request = RawNotificationRequest(
      urlencode(notification).encode("utf-8"),
      {"Content-Type": "application/x-www-form-urlencoded"},
    )
    parsed = asyncio.run(client.parse_notification(raw_request))
    assert parsed == notification
    assert raw_request.content_type == "application/x-www-form-urlencoded"

  def test_keeps_blank_values(self):
    client = _make_client()
    notification = _signed_notification(TxAuthNo="")
    raw_request = RawNotificationRequest(urlencode(notification))
    parsed = asyncio.run(client.parse_notification(raw_request))
    assert parsed["TxAuthNo"] == ""

  def test_empty_body_is_malformed(self):
    client = _make_client()
    with pytest.raises(MalformedNotificationError):
      asyncio.run(client.parse_notification(RawNotificationRequest(b"")))

  def test_non_form_body_is_malformed(self):
    client = _make_client()
    with pytest.raises(MalformedNotificationError):
      asyncio.run(client.parse_notification(RawNotificationRequest(b"this is not a form")))

  def test_invalid_utf8_is_malformed(self):
    client = _make_client()
    with pytest.raises(MalformedNotificationError):
      asyncio.run(client.parse_notification(RawNotificationRequest(b"Status=\xff\xfe")))

  def test_missing_signature_is_malformed(self):
    client = _make_client()
    notification = _signed_notification()
    del notification["VPSSignature"]
    with pytest.raises(MalformedNotificationError) as error_info:
      asyncio.run(client.parse_notification(RawNotificationRequest(urlencode(notification).encode())))
    assert "VPSSignature" in str(error_info.value)


# ===========================================================================
# Test: Notification signature
# ===========================================================================

class TestNotificationSignature:

  def test_signature_matches_hand_computed_md5(self):
    notification = {
      "VendorTxCode": "TX1",
      "Status": "OK",
      "TxAuthNo": "8152",
      "AVSCV2": "ALL MATCH",
      "CardType": "VISA",
      "Last4Digits": "0006",
    }
    expected_source = "{V1}" + "TX1" + "OK" + "8152" + "testvendor" + "ALL MATCH" + "K1" + \
      "VISA" + "0006"
    expected = hashlib.md5(expected_source.encode("utf-8")).hexdigest().upper()

    signature = sagepay_gateway_client.compute_notification_signature(
      "TestVendor", "{V1}", "K1", notification,
    )
    assert signature == expected

  def test_valid_signature_verifies(self):
    client = _make_client()
    assert client.verify_notification_signature("{V1}", "K1", _signed_notification()) is True

  def test_lowercase_signature_is_accepted(self):
    client = _make_client()
    notification = _signed_notification()
    notification["VPSSignature"] = notification["VPSSignature"].lower()
    assert client.verify_notification_signature("{V1}", "K1", notification) is True

  def test_tampered_status_fails(self):
    client = _make_client()
    notification = _signed_notification(Status="NOTAUTHED")
    notification["Status"] = "OK"
    assert client.verify_notification_signature("{V1}", "K1", notification) is False

  def test_wrong_security_key_fails(self):
    client = _make_client()
    assert client.verify_notification_signature("{V1}", "WRONG", _signed_notification()) is False

  def test_different_vps_tx_id_fails(self):
    client = _make_client()
    notification = _signed_notification(vps_tx_id="{OTHER}")
    assert client.verify_notification_signature("{V1}", "K1", notification) is False

  def test_signature_from_other_vendor_fails(self):
    client = _make_client("testvendor")
    notification = _signed_notification(vendor_name="someoneelse")
    assert client.verify_notification_signature("{V1}", "K1", notification) is False

  def test_missing_stored_secrets_fail(self):
    client = _make_client()
    assert client.verify_notification_signature(None, None, _signed_notification()) is False

  def test_non_ascii_signature_does_not_crash(self):
    client = _make_client()
    notification = _signed_notification()
    notification["VPSSignature"] = "Ünicode"
    assert client.verify_notification_signature("{V1}", "K1", notification) is False


# ===========================================================================
# Test: Singleton
# ===========================================================================

def test_get_sagepay_gateway_client_is_singleton():
  with patch.object(sagepay_gateway_client, "_sagepay_gateway_singleton", None):
    first = sagepay_gateway_client.get_sagepay_gateway_client()
    second = sagepay_gateway_client.get_sagepay_gateway_client()
    assert first is second
