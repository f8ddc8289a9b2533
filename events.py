import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List
from config import Batch, Listing

logger = logging.getLogger(__name__)

NEW_LISTING = 'new_listing'
NEW_LISTINGS_BATCH = 'new_listings_batch'
BATCH_DELIVERED = 'batch_delivered'
INTERACTION = 'interaction'
ERROR = 'error'


@dataclass
class InteractionEvent:
    """A user pressed a buy button on a delivered listing."""
    listing: Listing
    user_id: str
    username: str
    message_handle: str
    position: int
    timestamp: datetime = field(default_factory=datetime.now)


class BotEvents:
    """
    Callback registry for side effects around the poll cycle.

    Observers run synchronously, in registration order. An observer that
    raises is logged and skipped; the remaining observers and the caller
    carry on.
    """

    def __init__(self):
        self._observers: Dict[str, List[Callable]] = {
            NEW_LISTING: [], NEW_LISTINGS_BATCH: [], BATCH_DELIVERED: [], INTERACTION: [], ERROR: [],
        }

    def _register(self, event: str, callback: Callable) -> Callable[[], None]:
        self._observers[event].append(callback)

        def unsubscribe():
            if callback in self._observers[event]:
                self._observers[event].remove(callback)
        return unsubscribe

    def on_new_listing(self, callback: Callable[[Listing], None]) -> Callable[[], None]:
        return self._register(NEW_LISTING, callback)

    def on_new_listings_batch(self, callback: Callable[[List[Listing]], None]) -> Callable[[], None]:
        """Called once per cycle with every newly detected listing."""
        return self._register(NEW_LISTINGS_BATCH, callback)

    def on_batch_delivered(self, callback: Callable[[Batch, str], None]) -> Callable[[], None]:
        return self._register(BATCH_DELIVERED, callback)

    def on_interaction(self, callback: Callable[[InteractionEvent], None]) -> Callable[[], None]:
        return self._register(INTERACTION, callback)

    def on_error(self, callback: Callable[[Exception, str], None]) -> Callable[[], None]:
        return self._register(ERROR, callback)

    def _emit(self, event: str, *args) -> int:
        failures = 0
        for callback in list(self._observers[event]):
            try:
                callback(*args)
            except Exception as e:
                failures += 1
                logger.error(f"Observer {getattr(callback, '__name__', callback)!r} failed on {event}: {e}",
                             exc_info=True)
        return failures

    def emit_new_listing(self, listing: Listing) -> int:
        logger.debug(f"New listing event: {listing.kind} {listing.offered_item.display_name} -> "
                     f"{listing.wanted_item.display_name}")
        return self._emit(NEW_LISTING, listing)

    def emit_new_listings_batch(self, listings: List[Listing]) -> int:
        logger.debug(f"New listings batch event: {len(listings)} listings")
        return self._emit(NEW_LISTINGS_BATCH, list(listings))

    def emit_batch_delivered(self, batch: Batch, message_handle: str) -> int:
        logger.debug(f"Batch delivered event: #{batch.sequence_number} ({len(batch.listings)} listings)")
        return self._emit(BATCH_DELIVERED, batch, message_handle)

    def emit_interaction(self, event: InteractionEvent) -> int:
        logger.info(f"Purchase button clicked by {event.username} for listing {event.listing.id}")
        return self._emit(INTERACTION, event)

    def emit_error(self, error: Exception, context: str) -> int:
        return self._emit(ERROR, error, context)
