import logging
from dataclasses import dataclass, field
from typing import List, Optional
from config import Listing
from transform import CURRENCY_ITEM_ID

logger = logging.getLogger(__name__)

RULE_TYPES = ('price_threshold', 'specific_item', 'manual_approval')


@dataclass
class AutoPurchaseRule:
    """An alert rule checked against every new listing."""
    rule_type: str
    item_id: Optional[str] = None
    max_seeds: Optional[int] = None
    enabled: bool = True
    id: Optional[int] = None


@dataclass
class TrackedItem:
    item_id: str
    item_name: str
    added_at: Optional[str] = None
    id: Optional[int] = None


@dataclass
class AutoPurchaseEvaluation:
    listing: Listing
    rules: List[AutoPurchaseRule] = field(default_factory=list)
    tracked: List[TrackedItem] = field(default_factory=list)

    @property
    def triggered(self) -> bool:
        return bool(self.rules or self.tracked)

    @property
    def reason(self) -> str:
        parts = [rule.rule_type for rule in self.rules]
        parts += [f"tracked:{item.item_id}" for item in self.tracked]
        return ', '.join(parts) if parts else 'no match'


def _involves(listing: Listing, item_id: str) -> bool:
    return item_id in (listing.offered_item.item_id, listing.wanted_item.item_id)


def rule_matches(rule: AutoPurchaseRule, listing: Listing) -> bool:
    """
    Whether a single enabled rule fires for a listing.

    price_threshold fires for sell listings asking currency at or below
    ``max_seeds``; specific_item fires when the item is on either side;
    manual_approval always fires. ``item_id`` narrows any rule to one item.
    """
    if not rule.enabled:
        return False
    if rule.item_id and not _involves(listing, rule.item_id):
        return False

    if rule.rule_type == 'price_threshold':
        if rule.max_seeds is None or listing.kind != 'sell':
            return False
        if listing.wanted_item.item_id != CURRENCY_ITEM_ID:
            return False
        return listing.wanted_item.quantity <= rule.max_seeds
    if rule.rule_type == 'specific_item':
        return bool(rule.item_id)
    if rule.rule_type == 'manual_approval':
        return True
    logger.warning(f"Unknown auto-purchase rule type: {rule.rule_type}")
    return False


def evaluate_listing(listing: Listing, rules: List[AutoPurchaseRule],
                     tracked_items: Optional[List[TrackedItem]] = None) -> AutoPurchaseEvaluation:
    evaluation = AutoPurchaseEvaluation(listing=listing)
    evaluation.rules = [rule for rule in rules if rule_matches(rule, listing)]
    evaluation.tracked = [item for item in (tracked_items or []) if _involves(listing, item.item_id)]
    return evaluation


class AutoPurchaseWatcher:
    """
    New-listing observer that reports listings matching alert rules or
    tracked items. It only alerts; nothing is ever bought.
    """

    def __init__(self, store):
        self.store = store
        self.alerts: List[AutoPurchaseEvaluation] = []

    def __call__(self, listing: Listing) -> Optional[AutoPurchaseEvaluation]:
        evaluation = evaluate_listing(listing, self.store.list_enabled_rules(), self.store.list_tracked_items())
        if not evaluation.triggered:
            return None
        self.alerts.append(evaluation)
        logger.info(
            f"Auto-purchase alert for listing {listing.id} "
            f"({listing.offered_item.display_name} x{listing.offered_item.quantity} -> "
            f"{listing.wanted_item.display_name} x{listing.wanted_item.quantity}): {evaluation.reason}"
        )
        return evaluation
