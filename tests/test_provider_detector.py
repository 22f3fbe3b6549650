"""Tests for reference-prefix provider detection."""

import pytest

from paygate.registry import ProviderDetector


class TestProviderDetector:
    """Tests for ProviderDetector.detect_from_reference."""

    @pytest.fixture
    def detector(self):
        return ProviderDetector.for_providers(["paystack", "square", "stripe"])

    def test_detects_generated_reference(self, detector):
        assert detector.detect_from_reference("PAYSTACK_1700000000_ab12cd34") == "paystack"

    def test_case_insensitive(self, detector):
        assert detector.detect_from_reference("square_1700000000_ab12") == "square"

    def test_requires_delimiter_after_prefix(self):
        """Test a prefix only matches when followed by the delimiter."""
        detector = ProviderDetector({"MON": "monnify"})
        assert detector.detect_from_reference("MONACO_123") is None
        assert detector.detect_from_reference("MON_123") == "monnify"

    def test_longest_prefix_wins(self):
        detector = ProviderDetector({"FLW": "flutterwave", "FLW_X": "flutterwave_x"})
        assert detector.detect_from_reference("FLW_X_123") == "flutterwave_x"
        assert detector.detect_from_reference("FLW_123") == "flutterwave"

    @pytest.mark.parametrize("reference", [None, "", "order-42", "PAYSTACK"])
    def test_no_match(self, detector, reference):
        assert detector.detect_from_reference(reference) is None

    def test_register_prefix_normalizes(self):
        detector = ProviderDetector()
        detector.register_prefix("flw_", "flutterwave")
        assert detector.prefixes() == {"FLW": "flutterwave"}

    def test_register_empty_prefix_rejected(self):
        with pytest.raises(ValueError):
            ProviderDetector().register_prefix("_", "acme")
