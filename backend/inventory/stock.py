"""
Stock Rules — derived stock status and quantity adjustments.

Stock status is a pure function of quantity vs minimum_stock and is applied
explicitly by every service that writes a Coral row:

  quantity == 0                → out_of_stock
  quantity <= minimum_stock    → low_stock
  otherwise                    → available

Quantity never goes negative; callers adjust stock inside the same
transaction as the order change that causes it.
"""

from db.models import Coral, StockStatus
from core.errors import ValidationError


def compute_stock_status(quantity: int, minimum_stock: int) -> StockStatus:
    """Classify a stock level against its minimum threshold."""
    if quantity <= 0:
        return StockStatus.OUT_OF_STOCK
    if quantity <= minimum_stock:
        return StockStatus.LOW_STOCK
    return StockStatus.AVAILABLE


def apply_stock_status(coral: Coral) -> Coral:
    coral.status = compute_stock_status(coral.quantity or 0, coral.minimum_stock or 0).value
    return coral


def is_low_stock(coral: Coral) -> bool:
    """True when the coral sits at or below its minimum-stock threshold."""
    return coral.quantity <= coral.minimum_stock


def decrement_stock(coral: Coral, quantity: int) -> Coral:
    """Remove sold units. Raises ValidationError instead of going negative."""
    if quantity <= 0:
        raise ValidationError(f"Quantity for {coral.species_name} must be positive")
    if coral.quantity < quantity:
        raise ValidationError(f"Insufficient stock for {coral.species_name}")
    coral.quantity = coral.quantity - quantity
    return apply_stock_status(coral)


def restore_stock(coral: Coral, quantity: int) -> Coral:
    """Return previously decremented units to stock."""
    coral.quantity = coral.quantity + quantity
    return apply_stock_status(coral)
