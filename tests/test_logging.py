"""Tests for structured logging and sensitive data masking."""

import json
import logging

from app.core.request_id import RequestIdFilter, set_request_id
from app.middleware.logging import mask_sensitive_data
from app.utils.logging_config import CloudRunJSONFormatter


def test_mask_sensitive_data():
    data = {
        "receipt": "MIIT1234567890abcdef",
        "purchaseToken": "short",
        "productId": "whatscard_premium_monthly",
        "nested": [{"apple_shared_secret": "s3cr3t-value"}],
    }

    masked = mask_sensitive_data(data)

    assert masked["receipt"] == "MIIT1234..."
    assert masked["purchaseToken"] == "***"
    assert masked["productId"] == "whatscard_premium_monthly"
    assert masked["nested"][0]["apple_shared_secret"] == "s3cr3t-v..."


def test_json_formatter_includes_extra_fields_and_request_id():
    set_request_id("req-abc")
    record = logging.LogRecord("app.test", logging.WARNING, __file__, 1, "Receipt validation failed", None, None)
    record.error_code = "AuthorityRejected"
    RequestIdFilter().filter(record)

    data = json.loads(CloudRunJSONFormatter().format(record))

    assert data["severity"] == "WARNING"
    assert data["message"] == "Receipt validation failed"
    assert data["error_code"] == "AuthorityRejected"
    assert data["request_id"] == "req-abc"
    set_request_id("")
