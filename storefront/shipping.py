"""Shipping fee tiers by total cart quantity (integer cents)."""

SINGLE_ITEM_CENTS = 7000
TWO_ITEMS_CENTS = 15000
BULK_CENTS = 10000  # three or more


def shipping_cost(total_quantity: int) -> int:
    if total_quantity <= 0:
        return 0
    if total_quantity == 1:
        return SINGLE_ITEM_CENTS
    if total_quantity == 2:
        return TWO_ITEMS_CENTS
    return BULK_CENTS
