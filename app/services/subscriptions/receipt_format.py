"""Structural detection of the receipt encoding emitted by the store SDK."""

import base64
import binascii
from enum import Enum

from app.utils.exceptions import MalformedReceipt


class ReceiptFormat(str, Enum):
    LEGACY_BUNDLE = "legacy_bundle"
    SIGNED_TOKEN = "signed_token"


def detect_receipt_format(receipt: str) -> ReceiptFormat:
    """
    Decide whether a receipt is a signed JWS token or a legacy base64 bundle.

    Newer SDKs hand out JWS transactions; older ones the base64 app receipt.
    A JWS is three dot-separated segments whose header is base64url JSON,
    which always starts with ``eyJ`` (``{"``).

    Raises:
        MalformedReceipt: If the receipt is neither
    """
    if not receipt or not isinstance(receipt, str):
        raise MalformedReceipt("Receipt must be a non-empty string")

    receipt = receipt.strip()
    parts = receipt.split(".")
    if len(parts) == 3 and parts[0].startswith("eyJ"):
        if not all(parts):
            raise MalformedReceipt("Signed token has an empty segment")
        return ReceiptFormat.SIGNED_TOKEN

    try:
        base64.b64decode(receipt, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedReceipt(f"Receipt is neither a signed token nor base64: {e}") from e

    return ReceiptFormat.LEGACY_BUNDLE
