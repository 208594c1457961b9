"""Unit tests for shipping normalization and cart shipping."""

import pytest

from src.core.errors import MixedShippingModeError
from src.services.shipping import (
    ShippingDescriptor,
    ShippingMode,
    compute_cart_shipping,
    line_shipping_cents,
    normalize_shipping,
    unit_shipping_cents,
)


class TestNormalizeShipping:
    """Tests for normalize_shipping."""

    def test_flat_prefers_per_unit_cents(self) -> None:
        """Test that shipping_fee_cents_per_unit wins over the other fee fields."""
        descriptor = normalize_shipping(
            {
                "shipping_mode": "flat",
                "shipping_fee_cents_per_unit": 500,
                "shipping_flat_fee_cents": 900,
                "shipping_flat_fee": "12.00",
            }
        )

        assert descriptor == ShippingDescriptor(ShippingMode.FLAT, 500)

    def test_falls_back_to_flat_fee_cents(self) -> None:
        """Test the second-priority cents field."""
        descriptor = normalize_shipping({"shipping_mode": "flat", "shipping_flat_fee_cents": 900})

        assert descriptor.per_unit_cents == 900

    def test_converts_legacy_decimal_fee(self) -> None:
        """Test that the legacy decimal fee is converted and rounded."""
        descriptor = normalize_shipping({"shipping_mode": "flat", "shipping_flat_fee": "4.995"})

        assert descriptor.per_unit_cents == 500

    def test_missing_mode_with_fee_is_flat(self) -> None:
        """Test that a legacy row with only a fee reads as flat shipping."""
        descriptor = normalize_shipping({"shipping_flat_fee": 3.5})

        assert descriptor.mode is ShippingMode.FLAT
        assert descriptor.per_unit_cents == 350

    def test_missing_mode_without_fee_is_free(self) -> None:
        """Test that a row without mode or fees ships free."""
        assert normalize_shipping({}).mode is ShippingMode.FREE

    def test_calculated_ignores_fees(self) -> None:
        """Test that calculated shipping never carries a local amount."""
        descriptor = normalize_shipping({"shipping_mode": "calculated", "shipping_fee_cents_per_unit": 500})

        assert descriptor.is_calculated
        assert descriptor.per_unit_cents == 0

    def test_negative_fee_clamps_to_zero(self) -> None:
        """Test that a negative legacy fee does not produce negative shipping."""
        descriptor = normalize_shipping({"shipping_mode": "flat", "shipping_flat_fee": "-2.00"})

        assert descriptor.per_unit_cents == 0

    def test_unreadable_legacy_fee_reads_as_zero(self) -> None:
        """Test that garbage in the legacy field is ignored."""
        descriptor = normalize_shipping({"shipping_mode": "flat", "shipping_flat_fee": "n/a"})

        assert descriptor.per_unit_cents == 0


class TestUnitAndLineShipping:
    """Tests for per-unit and per-line amounts."""

    @pytest.mark.parametrize(
        ("descriptor", "expected"),
        [
            (ShippingDescriptor(ShippingMode.FLAT, 500), 500),
            (ShippingDescriptor(ShippingMode.FREE), 0),
            (ShippingDescriptor(ShippingMode.CALCULATED), 0),
        ],
    )
    def test_unit_shipping(self, descriptor: ShippingDescriptor, expected: int) -> None:
        """Test that only flat shipping contributes locally."""
        assert unit_shipping_cents(descriptor) == expected

    def test_line_shipping_multiplies_by_quantity(self) -> None:
        """Test that flat shipping is charged per unit."""
        assert line_shipping_cents(ShippingDescriptor(ShippingMode.FLAT, 500), 2) == 1000


class TestComputeCartShipping:
    """Tests for compute_cart_shipping."""

    def test_flat_and_free_items(self) -> None:
        """Test one flat item at 500/unit x2 plus one free item gives 1000."""
        result = compute_cart_shipping(
            [
                (ShippingDescriptor(ShippingMode.FLAT, 500), 2),
                (ShippingDescriptor(ShippingMode.FREE), 3),
            ]
        )

        assert result.shipping_cents == 1000
        assert result.has_calculated is False

    def test_calculated_only(self) -> None:
        """Test that a fully calculated cart reports calculated shipping and no flat amount."""
        result = compute_cart_shipping([(ShippingDescriptor(ShippingMode.CALCULATED), 1)])

        assert result.shipping_cents == 0
        assert result.has_calculated is True

    def test_calculated_with_free_flat_is_allowed(self) -> None:
        """Test that a zero flat total does not count as mixing."""
        result = compute_cart_shipping(
            [
                (ShippingDescriptor(ShippingMode.CALCULATED), 1),
                (ShippingDescriptor(ShippingMode.FLAT, 0), 1),
            ]
        )

        assert result.has_calculated is True

    def test_rejects_mixed_modes(self) -> None:
        """Test that nonzero flat shipping mixed with calculated shipping raises."""
        with pytest.raises(MixedShippingModeError) as exc_info:
            compute_cart_shipping(
                [
                    (ShippingDescriptor(ShippingMode.FLAT, 500), 1),
                    (ShippingDescriptor(ShippingMode.CALCULATED), 1),
                ]
            )

        assert exc_info.value.code == "mixed_shipping_modes"
        assert exc_info.value.context["flat_shipping_cents"] == 500
