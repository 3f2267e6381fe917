"""
Tests for derived stock status and quantity adjustments.
"""

import pytest

from core.errors import ValidationError
from db.models import Coral, StockStatus
from inventory.stock import (
    apply_stock_status,
    compute_stock_status,
    decrement_stock,
    is_low_stock,
    restore_stock,
)


def _coral(quantity: int, minimum_stock: int = 2) -> Coral:
    return apply_stock_status(
        Coral(species_name="Green Slimer", scientific_name="Acropora yongei", quantity=quantity, minimum_stock=minimum_stock)
    )


class TestComputeStockStatus:
    def test_zero_is_out_of_stock(self):
        assert compute_stock_status(0, 5) == StockStatus.OUT_OF_STOCK

    def test_at_minimum_is_low_stock(self):
        assert compute_stock_status(5, 5) == StockStatus.LOW_STOCK

    def test_below_minimum_is_low_stock(self):
        assert compute_stock_status(1, 5) == StockStatus.LOW_STOCK

    def test_above_minimum_is_available(self):
        assert compute_stock_status(6, 5) == StockStatus.AVAILABLE

    def test_zero_minimum_with_stock_is_available(self):
        assert compute_stock_status(1, 0) == StockStatus.AVAILABLE


class TestStockAdjustments:
    def test_decrement_updates_status(self):
        coral = _coral(3)
        assert coral.status == StockStatus.AVAILABLE.value
        decrement_stock(coral, 1)
        assert coral.quantity == 2
        assert coral.status == StockStatus.LOW_STOCK.value
        assert is_low_stock(coral)

    def test_decrement_to_zero(self):
        coral = _coral(2)
        decrement_stock(coral, 2)
        assert coral.quantity == 0
        assert coral.status == StockStatus.OUT_OF_STOCK.value

    def test_decrement_never_goes_negative(self):
        coral = _coral(1)
        with pytest.raises(ValidationError, match="Insufficient stock for Green Slimer"):
            decrement_stock(coral, 2)
        assert coral.quantity == 1

    def test_decrement_rejects_non_positive_quantity(self):
        coral = _coral(4)
        with pytest.raises(ValidationError):
            decrement_stock(coral, 0)

    def test_restore_recomputes_status(self):
        coral = _coral(0)
        restore_stock(coral, 5)
        assert coral.quantity == 5
        assert coral.status == StockStatus.AVAILABLE.value
