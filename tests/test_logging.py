"""
Unit tests for log processors.
"""
from typing import Any, Dict

import pytest

from mpesa_bridge.config import Settings
from mpesa_bridge.monitoring.logging import add_app_context, mask_phone, mask_phone_numbers


class TestPhoneMasking:
    """Customer phone numbers in log events."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("254712345678", "2547****5678"),
            (254712345678, "2547****5678"),
            ("0712345678", "0712**5678"),
            ("12345", "12345"),
        ],
    )
    def test_mask_phone(self, value: Any, expected: Any) -> None:
        assert mask_phone(value) == expected

    @pytest.mark.unit
    def test_processor_masks_phone_fields_only(self) -> None:
        event: Dict[str, Any] = {
            "event": "stk_push_initiated",
            "phone": "254712345678",
            "phone_number": None,
            "checkout_request_id": "ws_CO_01032025093000123456",
        }

        result = mask_phone_numbers(None, "info", event)

        assert result["phone"] == "2547****5678"
        assert result["phone_number"] is None
        assert result["checkout_request_id"] == "ws_CO_01032025093000123456"


class TestAppContext:
    """Static fields stamped on every event."""

    @pytest.mark.unit
    def test_adds_environment_without_overriding(self, test_settings: Settings) -> None:
        processor = add_app_context(test_settings)

        result = processor(None, "info", {"event": "x", "app_env": "override"})

        assert result["app_name"] == test_settings.app_name
        assert result["daraja_env"] == "sandbox"
        assert result["app_env"] == "override"
