"""
Sage Pay Server Bridge -- Field Validation

Checks transaction fields for characters the Sage Pay API will not accept,
before anything is sent over the network.

The allow-list is the gateway's own: digits, a fixed set of punctuation,
and every code point from "A" (U+0041) up to U+FF5A. The upper end of that
range is FULLWIDTH LATIN SMALL LETTER Z, not ASCII "z", so accented Latin
letters (and a great deal more) are accepted. Do not "fix" the range to
A-Za-z; the gateway depends on it.

The range is matched per code point. Characters beyond the Basic
Multilingual Plane (emoji, U+10000 and up) are above U+FF5A and are
rejected, even though a UTF-16 based check would see their surrogate
halves (U+D800..U+DFFF) as inside the range and let them through.
"""

import re

from services.sagepay_errors import InvalidCharacterError

_VALID_CHARACTERS_PATTERN = re.compile(
  "[A-\uff5a0-9@:,{}\"#^\\[\\]*'\\\\/\\-_.$?+();|! ~]*"
)


def is_valid_field_text(text):
  """True if every character of `text` is in the gateway's allowed set."""
  return _VALID_CHARACTERS_PATTERN.fullmatch(text) is not None


def coerce_field_value(value):
  """
  Convert a field value to the string that will be sent on the wire.

  None becomes "", bytes are decoded as UTF-8, everything else uses str().
  Undecodable bytes raise UnicodeDecodeError.
  """
  if value is None:
    return ""
  if isinstance(value, str):
    return value
  if isinstance(value, (bytes, bytearray)):
    return bytes(value).decode("utf-8")
  return str(value)


def validate_fields(fields):
  """
  Raise InvalidCharacterError if any key or value of `fields` contains a
  character outside the allowed set. Keys are checked before their values.
  """
  for key, value in fields.items():
    key_text = coerce_field_value(key)
    if not is_valid_field_text(key_text):
      raise InvalidCharacterError(f"Invalid character in key '{key_text}'.", field_key=key_text)

    try:
      value_text = coerce_field_value(value)
    except UnicodeDecodeError:
      raise InvalidCharacterError(
        f"Invalid character in value for '{key_text}'.", field_key=key_text,
      ) from None

    if not is_valid_field_text(value_text):
      raise InvalidCharacterError(
        f"Invalid character in value for '{key_text}'.", field_key=key_text,
      )
