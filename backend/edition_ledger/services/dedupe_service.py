"""
Order Deduplication Resolver

WHY: The same purchase can be stored more than once (a manually keyed-in
warehouse row created before the platform sync arrives, or a historical
double ingestion). Collector listings and certificate issuance must see one
order per purchase, or a single purchase could appear to grant two editions.

WINNER RULES (in priority order):
1. Not cancelled beats cancelled
2. Platform-sourced beats manually entered
3. Otherwise the first-seen row stays the winner (stable, deterministic)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from .validity import is_order_cancelled

MANUAL_SOURCE = "manual"
MANUAL_ID_PREFIX = "WH-"

_LEADING_DIGITS = re.compile(r"\d+")


def canonical_key(order) -> str:
    """
    '#1114' -> '1114', '1114-A' -> '1114', 'Gift Order' -> 'gift order',
    nameless -> the internal order id.
    """
    name = (order.order_name or order.order_number or "").strip()
    digits = _LEADING_DIGITS.match(name.lstrip("#").strip())
    if digits:
        return digits.group(0)
    if name:
        return name.lower()
    return str(order.id)


def is_manual(order) -> bool:
    if (order.source or "").lower() == MANUAL_SOURCE:
        return True
    return str(order.id or "").upper().startswith(MANUAL_ID_PREFIX)


def _beats(challenger, incumbent) -> bool:
    challenger_cancelled = is_order_cancelled(challenger)
    incumbent_cancelled = is_order_cancelled(incumbent)
    if challenger_cancelled != incumbent_cancelled:
        return not challenger_cancelled

    challenger_manual = is_manual(challenger)
    incumbent_manual = is_manual(incumbent)
    if challenger_manual != incumbent_manual:
        return not challenger_manual

    return False


@dataclass
class DuplicateGroup:
    canonical_key: str
    winner: object
    superseded: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "canonical_key": self.canonical_key,
            "winner_order_id": self.winner.id,
            "superseded_order_ids": [o.id for o in self.superseded],
        }


def group_orders(orders) -> list[DuplicateGroup]:
    """One group per canonical key, in first-seen key order."""
    groups: dict[str, DuplicateGroup] = {}
    for order in orders:
        key = canonical_key(order)
        group = groups.get(key)
        if group is None:
            groups[key] = DuplicateGroup(canonical_key=key, winner=order)
        elif _beats(order, group.winner):
            group.superseded.append(group.winner)
            group.winner = order
        else:
            group.superseded.append(order)
    return list(groups.values())


def dedupe(orders) -> list:
    """Exactly one order per canonical key."""
    return [group.winner for group in group_orders(orders)]


def duplicate_groups(orders) -> list[DuplicateGroup]:
    return [group for group in group_orders(orders) if group.superseded]
