import logging
from collections import OrderedDict
from typing import Dict, List, Optional, Tuple
from config import DeliveryRecord, Listing
from storage import ListingStore

logger = logging.getLogger(__name__)


class DeliveryTracker:
    """Maps delivered listings to the message slot that shows them."""

    def __init__(self, store: ListingStore):
        self.store = store

    def record(self, listing_id: str, message_handle: str, channel_ref: str,
               batch_sequence: int, position: int) -> bool:
        """
        Remembers that ``listing_id`` is shown at ``position`` of a message.

        Recording the same listing twice is a no-op.

        Returns:
            bool: True if a new record was written
        """
        record = DeliveryRecord(
            listing_id=listing_id,
            message_handle=str(message_handle),
            channel_ref=str(channel_ref),
            batch_sequence=batch_sequence,
            position_in_batch=position,
        )
        inserted = self.store.insert_delivery_if_absent(record)
        if not inserted:
            logger.debug(f"Listing {listing_id} already recorded as delivered")
        return inserted

    def resolve(self, message_handle: str, position: int) -> Optional[Listing]:
        """Returns the listing at a message slot, or None for a stale reference."""
        listing = self.store.find_by_message_and_position(str(message_handle), position)
        if listing is None:
            logger.warning(f"No listing for message {message_handle} position {position}")
        return listing

    def list_all_for_status_scan(self) -> List[Tuple[Listing, DeliveryRecord]]:
        return self.store.list_all_deliveries()

    @staticmethod
    def group_by_message(tracked: List[Tuple[Listing, DeliveryRecord]]
                         ) -> Dict[str, List[Tuple[Listing, DeliveryRecord]]]:
        """Groups delivered listings per message, each group sorted by position."""
        groups: Dict[str, List[Tuple[Listing, DeliveryRecord]]] = OrderedDict()
        for listing, record in tracked:
            groups.setdefault(record.message_handle, []).append((listing, record))
        for entries in groups.values():
            entries.sort(key=lambda entry: entry[1].position_in_batch)
        return groups
