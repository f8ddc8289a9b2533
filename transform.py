import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
from config import Listing, ListingItem, SellerProfile

logger = logging.getLogger(__name__)

CURRENCY_ITEM_ID = 'assorted-seeds'
CURRENCY_ITEM_NAME = 'Assorted Seeds'
CURRENCY_ITEM_ICON = 'https://cdn.metaforge.app/arc-raiders/icons/assorted-seeds.webp'

LISTING_KINDS = ('sell', 'buy')


class MalformedListingError(ValueError):
    """Raised when a raw API record cannot be turned into a Listing."""

    def __init__(self, record_id: Optional[str], reason: str):
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"Malformed listing {record_id or '<no id>'}: {reason}")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parses an ISO 8601 timestamp into an aware datetime (UTC if no offset)."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _require(raw: Dict[str, Any], key: str, record_id: Optional[str]) -> Any:
    value = raw.get(key)
    if value is None or value == '':
        raise MalformedListingError(record_id, f"missing '{key}'")
    return value


def _item_from(item: Any, item_id: Any, quantity: Any, record_id: Optional[str], label: str) -> ListingItem:
    if not isinstance(item, dict):
        raise MalformedListingError(record_id, f"missing '{label}' details")
    if item_id is None or quantity is None:
        raise MalformedListingError(record_id, f"incomplete '{label}' id/quantity")
    if not item.get('name'):
        raise MalformedListingError(record_id, f"'{label}' has no name")
    return ListingItem(
        item_id=str(item_id),
        display_name=item['name'],
        icon_ref=item.get('icon') or '',
        quantity=int(quantity),
        rarity=item.get('rarity'),
    )


def currency_item(amount: Any) -> ListingItem:
    """The pseudo-item used for the currency side of a priced trade."""
    return ListingItem(
        item_id=CURRENCY_ITEM_ID,
        display_name=CURRENCY_ITEM_NAME,
        icon_ref=CURRENCY_ITEM_ICON,
        quantity=int(amount),
    )


def normalize_listing(raw: Dict[str, Any]) -> Listing:
    """
    Convert one raw API record into a Listing.

    Sell records offer the traded item and want either currency or a barter
    item; buy records want the traded item and offer either currency or a
    barter item. A non-null ``price`` always means the counter side is the
    currency pseudo-item.

    Args:
        raw: A single record from the API ``data`` array

    Returns:
        Listing: The canonical listing

    Raises:
        MalformedListingError: If required fields are missing
    """
    if not isinstance(raw, dict):
        raise MalformedListingError(None, f"expected an object, got {type(raw).__name__}")

    record_id = raw.get('id')
    listing_id = str(_require(raw, 'id', None))
    kind = _require(raw, 'listing_type', record_id)
    if kind not in LISTING_KINDS:
        raise MalformedListingError(record_id, f"unknown listing_type {kind!r}")

    traded = _item_from(raw.get('item'), raw.get('item_id'), raw.get('quantity'), record_id, 'item')

    price = raw.get('price')
    if price is not None:
        counter = currency_item(price)
    else:
        counter = _item_from(raw.get('wanted_item'), raw.get('wanted_item_id'),
                             raw.get('wanted_quantity'), record_id, 'wanted_item')

    if kind == 'sell':
        offered, wanted = traded, counter
    else:
        offered, wanted = counter, traded

    profile = raw.get('user_profile')
    if not isinstance(profile, dict):
        raise MalformedListingError(record_id, "missing 'user_profile'")

    return Listing(
        id=listing_id,
        kind=kind,
        status=str(_require(raw, 'status', record_id)),
        offered_item=offered,
        wanted_item=wanted,
        seller_profile=SellerProfile(
            full_name=profile.get('full_name') or '',
            handle=profile.get('username') or '',
            external_game_id=profile.get('embark_id') or '',
            avatar_ref=profile.get('avatar_url'),
        ),
        created_at=_require(raw, 'created_at', record_id),
        updated_at=raw.get('updated_at') or raw['created_at'],
        user_id=str(raw.get('user_id') or ''),
        description=raw.get('description'),
    )


def normalize_many(raws: List[Dict[str, Any]]) -> Tuple[List[Listing], List[MalformedListingError]]:
    """
    Normalize a list of raw records, skipping the ones that fail.

    Returns:
        Tuple of (listings in input order, errors for the skipped records)
    """
    listings = []
    errors = []
    for raw in raws:
        try:
            listings.append(normalize_listing(raw))
        except (MalformedListingError, TypeError, ValueError) as e:
            if not isinstance(e, MalformedListingError):
                record_id = raw.get('id') if isinstance(raw, dict) else None
                e = MalformedListingError(record_id, str(e))
            logger.warning(f"Skipping listing: {e}")
            errors.append(e)
    return listings, errors
