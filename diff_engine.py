import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Set, Tuple
from config import DeliveryRecord, Listing

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusChange:
    """A tracked listing whose status differs from the latest fetch."""
    listing_id: str
    old_status: str
    new_status: str
    updated_at: str


def index_by_id(fetched: Iterable[Listing]) -> Dict[str, Listing]:
    """
    Builds an id -> listing lookup. The first occurrence of an id wins.
    """
    index: Dict[str, Listing] = {}
    for listing in fetched:
        if listing.id in index:
            logger.warning(f"Duplicate listing id {listing.id} in fetch; keeping the first occurrence")
            continue
        index[listing.id] = listing
    return index


def find_new(fetched: List[Listing], known_ids: Set[str]) -> List[Listing]:
    """
    Returns the fetched listings whose id is not in ``known_ids``.

    Order follows ``fetched``. A repeated id is returned once, at its first
    position.
    """
    new_listings = []
    seen = set()
    for listing in fetched:
        if listing.id in known_ids or listing.id in seen:
            continue
        seen.add(listing.id)
        new_listings.append(listing)

    logger.info(f"Found {len(new_listings)} new listings out of {len(fetched)} fetched")
    if new_listings:
        logger.debug(f"New listing IDs: {', '.join(listing.id for listing in new_listings)}")
    return new_listings


def find_status_changes(fetched: List[Listing],
                        tracked: List[Tuple[Listing, DeliveryRecord]]) -> List[StatusChange]:
    """
    Compares the status of every tracked listing with the fetched copy.

    Tracked listings missing from ``fetched`` are left alone.

    Args:
        fetched: Listings from the latest poll
        tracked: Delivered listings with their delivery records

    Returns:
        List[StatusChange]: One entry per changed listing, in ``tracked`` order
    """
    current = index_by_id(fetched)
    changes = []
    for listing, _record in tracked:
        latest = current.get(listing.id)
        if latest is None or latest.status == listing.status:
            continue
        logger.info(f"Status change detected for listing {listing.id}: {listing.status} -> {latest.status}")
        changes.append(StatusChange(listing.id, listing.status, latest.status, latest.updated_at))
    return changes
