import asyncio
import enum
import logging
import signal
import sys
import time
from typing import List, Optional
from config import Batch, Config, ConfigError, Listing
from api_client import ListingsClient
from batcher import make_batches
from delivery_tracker import DeliveryTracker
from diff_engine import find_new, find_status_changes, index_by_id
from discord_notifier import DiscordNotifier, error_message, parse_interaction_reference
from events import BotEvents, InteractionEvent
from purchase_rules import AutoPurchaseWatcher
from storage import ListingStore

logger = logging.getLogger(__name__)

INVALID_BUTTON_REPLY = error_message('Invalid button. This listing may be outdated.')
STALE_REFERENCE_REPLY = error_message('Listing not found. It may have been removed or is no longer available.')
PURCHASE_REPLY = 'Feature not available'


class PollState(enum.Enum):
    IDLE = 'idle'
    POLLING = 'polling'


class Monitor:
    """Main application class that coordinates polling, diffing and delivery."""

    def __init__(self, config: Config, store: ListingStore, client: ListingsClient, notifier,
                 events: Optional[BotEvents] = None):
        self.config = config
        self.store = store
        self.client = client
        self.notifier = notifier
        self.tracker = DeliveryTracker(store)
        self.events = events or BotEvents()
        self.state = PollState.IDLE
        self._cycle_task: Optional[asyncio.Task] = None
        self._next_sequence = 1
        self.started_at = time.monotonic()
        self.stats = {
            'polls_completed': 0,
            'polls_failed': 0,
            'ticks_skipped': 0,
            'listings_fetched': 0,
            'new_listings': 0,
            'duplicates_skipped': 0,
            'batches_posted': 0,
            'batches_failed': 0,
            'status_changes': 0,
            'messages_edited': 0,
        }

    async def poll_once(self) -> bool:
        """
        Runs one cycle unless another is still in progress.

        Returns:
            bool: False if the tick was skipped
        """
        if self.state is PollState.POLLING:
            self.stats['ticks_skipped'] += 1
            logger.warning("Previous poll still processing, skipping this cycle")
            return False

        self.state = PollState.POLLING
        started = time.monotonic()
        try:
            await self.run_cycle()
            self.stats['polls_completed'] += 1
            logger.info(f"Polling cycle completed in {time.monotonic() - started:.2f}s")
        except Exception as e:
            self.stats['polls_failed'] += 1
            logger.error(f"Error during polling cycle (after {time.monotonic() - started:.2f}s): {e}",
                         exc_info=True)
            self.events.emit_error(e, 'poll_once')
        finally:
            self.state = PollState.IDLE
        return True

    async def run_cycle(self):
        """Fetch, apply status changes, then detect, store and deliver new listings."""
        logger.info("Step 1/4: Fetching listings...")
        fetched = await self.client.fetch_all_listings()
        self.stats['listings_fetched'] += len(fetched)
        fetched_by_id = index_by_id(fetched)
        unique_fetched = list(fetched_by_id.values())

        logger.info("Step 2/4: Checking for status changes...")
        await self.check_status_changes(unique_fetched)

        logger.info("Step 3/4: Checking for new listings...")
        known_ids = self.store.known_ids(list(fetched_by_id))
        new_listings = find_new(unique_fetched, known_ids)

        pending = []
        if self.config.REDELIVER_UNDELIVERED:
            new_ids = {listing.id for listing in new_listings}
            pending = [listing for listing in self.store.list_undelivered() if listing.id not in new_ids]
            if pending:
                logger.info(f"Re-queueing {len(pending)} undelivered listings")

        if not new_listings and not pending:
            logger.info("No new listings detected")
            return

        if new_listings:
            inserted = self.store.insert_listings(new_listings)
            self.stats['new_listings'] += len(new_listings)
            self.stats['duplicates_skipped'] += len(new_listings) - inserted
            self.events.emit_new_listings_batch(new_listings)
            for listing in new_listings:
                self.events.emit_new_listing(listing)

        logger.info("Step 4/4: Posting new listings to Discord...")
        await self.deliver_listings(new_listings + pending)

    async def check_status_changes(self, fetched: List[Listing]) -> int:
        """
        Persists changed statuses and re-renders every affected message.

        Each message is edited with all of its listings in original position
        order. A failed edit does not stop the others.

        Returns:
            int: Number of messages edited successfully
        """
        tracked = self.tracker.list_all_for_status_scan()
        if not tracked:
            logger.debug("No posted listings to check for status changes")
            return 0

        changes = find_status_changes(fetched, tracked)
        if not changes:
            logger.debug("No status changes detected")
            return 0

        changed_ids = set()
        for change in changes:
            self.store.set_status(change.listing_id, change.new_status, change.updated_at)
            changed_ids.add(change.listing_id)
        self.stats['status_changes'] += len(changes)

        groups = self.tracker.group_by_message(tracked)
        affected = {handle: entries for handle, entries in groups.items()
                    if any(listing.id in changed_ids for listing, _ in entries)}
        logger.info(f"Detected {len(changes)} status changes across {len(affected)} messages")

        edited = 0
        for index, (message_handle, entries) in enumerate(affected.items()):
            if index and self.config.EDIT_DELAY:
                await asyncio.sleep(self.config.EDIT_DELAY)
            record = entries[0][1]
            try:
                listings = [self.store.get_by_id(listing.id) for listing, _ in entries]
                listings = [listing for listing in listings if listing is not None]
                if not listings:
                    logger.warning(f"No listings found for message {message_handle}")
                    continue
                embed = self.notifier.render_batch_embed(listings, record.batch_sequence)
                if await self.notifier.edit_message(message_handle, record.channel_ref, embed):
                    edited += 1
                else:
                    logger.warning(f"Edit request for message {message_handle} was not applied")
            except Exception as e:
                logger.error(f"Error updating message {message_handle}: {e}", exc_info=True)
                self.events.emit_error(e, 'check_status_changes')

        self.stats['messages_edited'] += edited
        logger.info(f"Updated {edited}/{len(affected)} Discord messages with status changes")
        return edited

    async def deliver_listings(self, listings: List[Listing]) -> int:
        """
        Batches listings and posts the batches one after another.

        Returns:
            int: Number of batches posted successfully
        """
        start_sequence = max(self._next_sequence, self.store.max_batch_sequence() + 1)
        batches = make_batches(listings, self.config.BATCH_SIZE, start_sequence=start_sequence)
        self._next_sequence = start_sequence + len(batches)
        posted = 0
        for index, batch in enumerate(batches):
            if index and self.config.BATCH_DELAY:
                logger.debug(f"Waiting {self.config.BATCH_DELAY}s before posting next batch...")
                await asyncio.sleep(self.config.BATCH_DELAY)
            if await self.deliver_batch(batch):
                posted += 1

        self.stats['batches_posted'] += posted
        self.stats['batches_failed'] += len(batches) - posted
        logger.info(f"Posted {posted}/{len(batches)} batches successfully")
        return posted

    async def deliver_batch(self, batch: Batch) -> bool:
        try:
            message_handle = await self.notifier.post_batch(batch)
        except Exception as e:
            logger.error(f"Error posting batch #{batch.sequence_number}: {e}", exc_info=True)
            self.events.emit_error(e, 'deliver_batch')
            return False
        if message_handle is None:
            logger.warning(f"Batch #{batch.sequence_number} was not delivered; "
                           f"{len(batch.listings)} listings stay undelivered")
            return False

        for position, listing in enumerate(batch.listings, start=1):
            self.tracker.record(listing.id, message_handle, self.notifier.channel_ref,
                                batch.sequence_number, position)
        self.store.mark_delivered([listing.id for listing in batch.listings])
        self.events.emit_batch_delivered(batch, message_handle)
        return True

    async def handle_interaction(self, message_handle: str, custom_id: str,
                                 user_id: str, username: str) -> str:
        """Resolves a buy button press and returns the ephemeral reply text."""
        reference = parse_interaction_reference(custom_id)
        if reference is None:
            return INVALID_BUTTON_REPLY

        listing = self.tracker.resolve(message_handle, reference.position)
        if listing is None or listing.id != reference.listing_id:
            return STALE_REFERENCE_REPLY

        self.events.emit_interaction(InteractionEvent(
            listing=listing,
            user_id=user_id,
            username=username,
            message_handle=message_handle,
            position=reference.position,
        ))
        logger.info(f"Purchase intent registered for {username}: "
                    f"{listing.offered_item.display_name} -> {listing.wanted_item.display_name}")
        return PURCHASE_REPLY

    def log_statistics(self):
        uptime = int(time.monotonic() - self.started_at)
        logger.info(f"Uptime: {uptime // 60}m {uptime % 60}s")
        for name, value in self.stats.items():
            logger.info(f"  {name}: {value}")

    async def run_scheduler(self, stop_event: asyncio.Event):
        """
        Starts a cycle every poll interval until ``stop_event`` is set.

        Cycles run as tasks so a slow cycle makes later ticks skip instead of
        queueing. On stop, the in-flight cycle is awaited.
        """
        interval = self.config.POLL_INTERVAL
        last_stats = time.monotonic()
        logger.info(f"Starting polling scheduler (every {interval:g} seconds)")
        while not stop_event.is_set():
            if self.state is PollState.POLLING:
                await self.poll_once()
            else:
                self._cycle_task = asyncio.create_task(self.poll_once())
            if time.monotonic() - last_stats >= self.config.STATS_INTERVAL:
                self.log_statistics()
                last_stats = time.monotonic()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        await self.wait_until_idle()
        logger.info("Polling scheduler stopped")

    async def wait_until_idle(self):
        if self._cycle_task is not None and not self._cycle_task.done():
            logger.info("Waiting for the current polling cycle to finish...")
            await self._cycle_task


async def wait_for_ready(notifier, client_task: asyncio.Task, stop_event: asyncio.Event) -> bool:
    """
    Waits until the Discord client is ready or a shutdown is requested.

    Returns:
        bool: True once ready, False if shutdown was requested first

    Raises:
        ConnectionError: If the client stops before becoming ready
    """
    ready = asyncio.create_task(notifier.wait_until_ready())
    stopping = asyncio.create_task(stop_event.wait())
    try:
        await asyncio.wait({client_task, ready, stopping}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (ready, stopping):
            if not task.done():
                task.cancel()
    if stop_event.is_set():
        logger.info("Shutdown requested before Discord became ready")
        return False
    if not ready.done() or ready.cancelled():
        client_task.result()
        raise ConnectionError("Discord client stopped before becoming ready")
    return True


async def run(config: Config) -> int:
    """Owns the store, API session and Discord client for the process lifetime."""
    store = ListingStore(config.DATABASE_PATH)
    client = ListingsClient(config)
    notifier = DiscordNotifier(config)
    stop_event = asyncio.Event()
    exit_code = 0
    client_task = None

    loop = asyncio.get_running_loop()
    handled_signals = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
            handled_signals.append(sig)
        except (NotImplementedError, RuntimeError):
            pass  # Windows: KeyboardInterrupt ends the loop instead

    try:
        store.open()
        monitor = Monitor(config, store, client, notifier)
        notifier.interaction_handler = monitor.handle_interaction
        if config.AUTO_PURCHASE_ENABLED:
            monitor.events.on_new_listing(AutoPurchaseWatcher(store))

        logger.info("Connecting to Discord...")
        client_task = asyncio.create_task(notifier.start())
        if await wait_for_ready(notifier, client_task, stop_event):
            await notifier.verify_channel()
            logger.info(f"Bot is now running: {config.describe()}")

            await monitor.run_scheduler(stop_event)
            monitor.log_statistics()
    except Exception as e:
        logger.error(f"Critical error: {e}", exc_info=True)
        exit_code = 1
    finally:
        try:
            await notifier.close()
            if client_task is not None:
                await client_task
        except Exception as e:
            logger.error(f"Failed to disconnect Discord client: {e}")
        try:
            client.close()
        except Exception as e:
            logger.error(f"Failed to close API session: {e}")
        try:
            store.close()
        except Exception as e:
            logger.error(f"Failed to close database: {e}")
        for sig in handled_signals:
            loop.remove_signal_handler(sig)
        logger.info("Shutdown complete")
    return exit_code


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        config = Config()
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1
    logging.getLogger().setLevel(config.LOG_LEVEL)

    try:
        return asyncio.run(run(config))
    except KeyboardInterrupt:
        logger.info("Received shutdown signal")
        return 0


if __name__ == "__main__":
    sys.exit(main())
