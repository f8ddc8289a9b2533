import asyncio
from typing import List, Optional
import pytest
from config import Config, Listing, ListingItem, SellerProfile
from storage import ListingStore


def make_raw(listing_id='l-1', listing_type='sell', price=250, status='active',
             created_at='2025-11-01T12:00:00Z', **overrides):
    """A raw listings API record."""
    raw = {
        'id': listing_id,
        'listing_type': listing_type,
        'user_id': 'u-1',
        'status': status,
        'description': None,
        'created_at': created_at,
        'updated_at': created_at,
        'item_id': 'iron-scrap',
        'item': {'id': 'iron-scrap', 'name': 'Iron Scrap', 'icon': 'https://cdn.test/iron.webp',
                 'rarity': 'common'},
        'quantity': 3,
        'price': price,
        'wanted_item_id': None,
        'wanted_item': None,
        'wanted_quantity': None,
        'user_profile': {'full_name': 'Ada Trader', 'username': 'ada#0001',
                         'avatar_url': None, 'embark_id': 'ada#1234'},
    }
    raw.update(overrides)
    return raw


def make_listing(listing_id='l-1', status='active', kind='sell',
                 created_at='2025-11-01T12:00:00Z', updated_at=None) -> Listing:
    return Listing(
        id=listing_id,
        kind=kind,
        status=status,
        offered_item=ListingItem('iron-scrap', 'Iron Scrap', 'https://cdn.test/iron.webp', 3, 'common'),
        wanted_item=ListingItem('assorted-seeds', 'Assorted Seeds', 'https://cdn.test/seeds.webp', 250),
        seller_profile=SellerProfile('Ada Trader', 'ada#0001', 'ada#1234'),
        created_at=created_at,
        updated_at=updated_at or created_at,
        user_id='u-1',
    )


class FakeListingsClient:
    """Stands in for ListingsClient; optionally blocks until released."""

    def __init__(self, listings: Optional[List[Listing]] = None):
        self.listings = listings or []
        self.calls = 0
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()

    async def fetch_all_listings(self) -> List[Listing]:
        self.calls += 1
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return list(self.listings)


class FakeTransport:
    """Records posts and edits instead of talking to Discord."""

    channel_ref = '555'

    def __init__(self):
        self.posted = []
        self.edits = []
        self.fail_batches = set()
        self.raise_batches = set()
        self.fail_edits = set()
        self._next_id = 1000

    async def post_batch(self, batch):
        if batch.sequence_number in self.raise_batches:
            raise RuntimeError(f"send failed for batch #{batch.sequence_number}")
        if batch.sequence_number in self.fail_batches:
            return None
        self._next_id += 1
        handle = str(self._next_id)
        self.posted.append((handle, batch))
        return handle

    def render_batch_embed(self, listings, sequence_number):
        return {'sequence': sequence_number, 'listings': list(listings)}

    async def edit_message(self, message_handle, channel_ref, embed):
        if message_handle in self.fail_edits:
            raise RuntimeError(f"edit failed for {message_handle}")
        self.edits.append((message_handle, channel_ref, embed))
        return True


@pytest.fixture
def store(tmp_path):
    listing_store = ListingStore(str(tmp_path / 'data' / 'listings.db')).open()
    yield listing_store
    listing_store.close()


@pytest.fixture
def env(monkeypatch, tmp_path):
    monkeypatch.setenv('DISCORD_TOKEN', 'test-token')
    monkeypatch.setenv('DISCORD_CHANNEL_ID', '555')
    monkeypatch.setenv('BATCH_DELAY', '0')
    monkeypatch.setenv('EDIT_DELAY', '0')
    monkeypatch.setenv('DATABASE_PATH', str(tmp_path / 'listings.db'))
    for name in ('POLL_INTERVAL', 'LOG_LEVEL', 'BATCH_SIZE', 'AUTO_PURCHASE_ENABLED',
                 'REDELIVER_UNDELIVERED', 'API_BASE_URL', 'API_PAGE_LIMIT', 'STATS_INTERVAL', 'API_TIMEOUT'):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def config(env):
    return Config()
