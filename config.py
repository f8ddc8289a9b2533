# config.py
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional
import logging
import os
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@dataclass
class ListingItem:
    """One side of a trade: the item (or currency) and how much of it."""
    item_id: str
    display_name: str
    icon_ref: str
    quantity: int
    rarity: Optional[str] = None


@dataclass
class SellerProfile:
    """Public profile of the user who created a listing."""
    full_name: str
    handle: str
    external_game_id: str
    avatar_ref: Optional[str] = None


@dataclass
class Listing:
    """Represents a normalized buy/sell trade listing."""
    id: str
    kind: str
    status: str
    offered_item: ListingItem
    wanted_item: ListingItem
    seller_profile: SellerProfile
    created_at: str
    updated_at: str
    user_id: str = ""
    description: Optional[str] = None

    def __eq__(self, other):
        if not isinstance(other, Listing):
            return False
        return (self.id == other.id and
                self.status == other.status and
                self.updated_at == other.updated_at)

    def __hash__(self):
        return hash(self.id)


@dataclass
class DeliveryRecord:
    """Where a listing was rendered: which message, which slot."""
    listing_id: str
    message_handle: str
    channel_ref: str
    batch_sequence: int
    position_in_batch: int
    posted_at: Optional[str] = None


@dataclass
class Batch:
    """A group of listings delivered together as one message."""
    sequence_number: int
    listings: List[Listing]
    created_at: datetime = field(default_factory=datetime.now)


class ConfigError(ValueError):
    """Raised when required configuration is missing or invalid."""


LOG_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}

DEFAULT_POLL_INTERVAL_MS = 5000
MIN_POLL_INTERVAL_MS = 1000
MAX_BATCH_SIZE = 5


class Config:
    """Configuration management for the application."""
    def __init__(self):
        load_dotenv()
        self.DISCORD_TOKEN = (os.getenv('DISCORD_TOKEN') or '').strip()
        if not self.DISCORD_TOKEN:
            raise ConfigError("DISCORD_TOKEN is required. Please set it in your .env file.")

        channel_id = (os.getenv('DISCORD_CHANNEL_ID') or '').strip()
        if not channel_id:
            raise ConfigError("DISCORD_CHANNEL_ID is required. Please set it in your .env file.")
        try:
            self.DISCORD_CHANNEL_ID = int(channel_id)
        except ValueError:
            raise ConfigError(f"DISCORD_CHANNEL_ID must be a numeric channel id, got {channel_id!r}")

        self.POLL_INTERVAL_MS = self._poll_interval(os.getenv('POLL_INTERVAL'))
        self.DATABASE_PATH = os.getenv('DATABASE_PATH') or './data/listings.db'
        self.LOG_LEVEL = self._log_level(os.getenv('LOG_LEVEL'))
        self.AUTO_PURCHASE_ENABLED = os.getenv('AUTO_PURCHASE_ENABLED', 'true').strip().lower() != 'false'
        self.REDELIVER_UNDELIVERED = os.getenv('REDELIVER_UNDELIVERED', 'false').strip().lower() == 'true'

        self.BATCH_SIZE = self._int_in_range('BATCH_SIZE', MAX_BATCH_SIZE, 1, MAX_BATCH_SIZE)
        self.BATCH_DELAY = self._non_negative_float('BATCH_DELAY', 0.5)  # seconds between batch sends
        self.EDIT_DELAY = self._non_negative_float('EDIT_DELAY', 0.2)  # seconds between message edits
        self.STATS_INTERVAL = self._non_negative_float('STATS_INTERVAL', 300.0)

        self.API_BASE_URL = os.getenv('API_BASE_URL', 'https://metaforge.app/api/arc-raiders/trade').rstrip('/')
        self.API_PAGE_LIMIT = self._int_in_range('API_PAGE_LIMIT', 30, 1, 100)
        self.API_TIMEOUT = self._non_negative_float('API_TIMEOUT', 10.0)

    @property
    def POLL_INTERVAL(self) -> float:
        """Polling interval in seconds."""
        return self.POLL_INTERVAL_MS / 1000

    @staticmethod
    def _poll_interval(raw: Optional[str]) -> int:
        if raw is None or raw.strip() == '':
            return DEFAULT_POLL_INTERVAL_MS
        try:
            value = int(raw)
        except ValueError:
            value = -1
        if value < MIN_POLL_INTERVAL_MS:
            logger.warning(f"Invalid POLL_INTERVAL: {raw}. Using default: {DEFAULT_POLL_INTERVAL_MS}ms")
            return DEFAULT_POLL_INTERVAL_MS
        return value

    @staticmethod
    def _log_level(raw: Optional[str]) -> int:
        name = (raw or 'info').strip().lower()
        if name not in LOG_LEVELS:
            logger.warning(f"Invalid LOG_LEVEL: {raw}. Using default: info")
            return logging.INFO
        return LOG_LEVELS[name]

    @staticmethod
    def _int_in_range(name: str, default: int, low: int, high: int) -> int:
        raw = os.getenv(name)
        if raw is None or raw.strip() == '':
            return default
        try:
            value = int(raw)
        except ValueError:
            raise ConfigError(f"{name} must be an integer, got {raw!r}")
        if not low <= value <= high:
            raise ConfigError(f"{name} must be between {low} and {high}, got {value}")
        return value

    @staticmethod
    def _non_negative_float(name: str, default: float) -> float:
        raw = os.getenv(name)
        if raw is None or raw.strip() == '':
            return default
        try:
            value = float(raw)
        except ValueError:
            raise ConfigError(f"{name} must be a number, got {raw!r}")
        if value < 0:
            raise ConfigError(f"{name} must not be negative, got {value}")
        return value

    def describe(self) -> str:
        """Human-readable summary without secrets."""
        return (f"channel={self.DISCORD_CHANNEL_ID} poll_interval={self.POLL_INTERVAL_MS}ms "
                f"database={self.DATABASE_PATH} batch_size={self.BATCH_SIZE} "
                f"auto_purchase={'enabled' if self.AUTO_PURCHASE_ENABLED else 'disabled'} "
                f"redeliver={'on' if self.REDELIVER_UNDELIVERED else 'off'}")
