"""
Discount Engine for Cart Lines.

This module handles tiered bulk pricing: an item carries a table of
discount tiers keyed by minimum quantity, and the unit price for a requested
quantity comes from the highest tier that quantity reaches.

Everything here is pure. Nothing is fetched, cached or mutated.
"""

from .models import Cart, CartLine, CatalogItem, DiscountTier


def _round_price(value: float) -> float:
    return max(0.0, round(value, 2))


def applicable_tier(item: CatalogItem, quantity: int) -> DiscountTier | None:
    """
    Find the tier that applies to `quantity` units of `item`.

    Among the tiers whose minimum_quantity is at most `quantity`, the one
    with the largest minimum_quantity wins. Minimum quantities are unique
    per item, so there is never a tie.
    """
    qualifying = [tier for tier in item.discounts if tier.minimum_quantity <= quantity]
    if not qualifying:
        return None
    return max(qualifying, key=lambda tier: tier.minimum_quantity)


def price_for(item: CatalogItem, quantity: int) -> float:
    """
    Discounted unit price of `item` when buying `quantity` units.

    A tier applies either a fixed per-unit deduction or a percentage
    multiplier to the base price, never both. A tier that carries both is
    treated as fixed. With no qualifying tier the base price is returned
    unchanged.

    Callers clamp quantity to at least 1 before calling.

    Examples:
        base 10.00, tiers {5: 10%}, {10: $2 off}
        quantity 4  -> 10.00
        quantity 5  -> 9.00
        quantity 10 -> 8.00
    """
    tier = applicable_tier(item, quantity)
    if tier is None:
        return _round_price(item.base_price)

    if tier.fixed_amount:
        return _round_price(item.base_price - tier.fixed_amount)
    if tier.percentage:
        return _round_price(item.base_price * (1 - tier.percentage))
    return _round_price(item.base_price)


def display_price(item: CatalogItem, quantity: int, show_discounts: bool = True) -> float:
    """Unit price to show, honoring the caller's discount visibility policy."""
    if not show_discounts:
        return _round_price(item.base_price)
    return price_for(item, quantity)


def modifier_total(line: CartLine) -> float:
    """Per-unit price of the modifiers selected on a cart line."""
    selected = set(line.selected_modifier_ids)
    return sum(option.price for option in line.item.modifiers if option.id in selected)


def line_total(line: CartLine, show_discounts: bool = True) -> float:
    unit = display_price(line.item, line.quantity, show_discounts) + modifier_total(line)
    return _round_price(unit * line.quantity)


def cart_total(cart: Cart, show_discounts: bool = True) -> float:
    return _round_price(sum(line_total(line, show_discounts) for line in cart.lines))
