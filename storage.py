"""
SQLite persistence for listings and their Discord deliveries.

Tables
------
listings             one row per listing ever seen, with a posted flag
posted_listings      where each delivered listing sits (message, position)
tracked_items        items users want flagged when they show up
auto_purchase_rules  alert rules evaluated against new listings

Inserts are insert-if-absent: a primary-key collision returns False instead
of raising, so re-seeing an id is never an error.
"""

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple
from config import DeliveryRecord, Listing, ListingItem, SellerProfile
from purchase_rules import AutoPurchaseRule, TrackedItem, RULE_TYPES

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS listings (
  id TEXT PRIMARY KEY,
  type TEXT NOT NULL CHECK(type IN ('buy', 'sell')),
  user_id TEXT NOT NULL,
  status TEXT NOT NULL,
  description TEXT,
  selling_id TEXT NOT NULL,
  selling_name TEXT NOT NULL,
  selling_icon TEXT NOT NULL,
  selling_amount INTEGER NOT NULL,
  selling_rarity TEXT,
  buying_id TEXT NOT NULL,
  buying_name TEXT NOT NULL,
  buying_icon TEXT NOT NULL,
  buying_amount INTEGER NOT NULL,
  buying_rarity TEXT,
  user_full_name TEXT NOT NULL,
  user_username TEXT NOT NULL,
  user_avatar_url TEXT,
  user_embark_id TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  fetched_at TEXT NOT NULL,
  posted_to_discord INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_listings_posted ON listings(posted_to_discord);
CREATE INDEX IF NOT EXISTS idx_listings_selling_item ON listings(selling_id);
CREATE INDEX IF NOT EXISTS idx_listings_buying_item ON listings(buying_id);

CREATE TABLE IF NOT EXISTS posted_listings (
  listing_id TEXT PRIMARY KEY,
  message_id TEXT NOT NULL,
  channel_id TEXT NOT NULL,
  batch_number INTEGER NOT NULL,
  batch_position INTEGER NOT NULL,
  posted_at TEXT NOT NULL,
  UNIQUE (message_id, batch_position),
  FOREIGN KEY (listing_id) REFERENCES listings(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_posted_message ON posted_listings(message_id);

CREATE TABLE IF NOT EXISTS tracked_items (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  item_id TEXT NOT NULL UNIQUE,
  item_name TEXT NOT NULL,
  added_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS auto_purchase_rules (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  rule_type TEXT NOT NULL CHECK(rule_type IN ('price_threshold', 'specific_item', 'manual_approval')),
  item_id TEXT,
  max_seeds INTEGER,
  enabled INTEGER NOT NULL DEFAULT 1,
  created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_rules_enabled ON auto_purchase_rules(enabled);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _listing_params(listing: Listing) -> dict:
    return {
        'id': listing.id,
        'type': listing.kind,
        'user_id': listing.user_id,
        'status': listing.status,
        'description': listing.description,
        'selling_id': listing.offered_item.item_id,
        'selling_name': listing.offered_item.display_name,
        'selling_icon': listing.offered_item.icon_ref,
        'selling_amount': listing.offered_item.quantity,
        'selling_rarity': listing.offered_item.rarity,
        'buying_id': listing.wanted_item.item_id,
        'buying_name': listing.wanted_item.display_name,
        'buying_icon': listing.wanted_item.icon_ref,
        'buying_amount': listing.wanted_item.quantity,
        'buying_rarity': listing.wanted_item.rarity,
        'user_full_name': listing.seller_profile.full_name,
        'user_username': listing.seller_profile.handle,
        'user_avatar_url': listing.seller_profile.avatar_ref,
        'user_embark_id': listing.seller_profile.external_game_id,
        'created_at': listing.created_at,
        'updated_at': listing.updated_at,
    }


def _row_to_listing(row: sqlite3.Row) -> Listing:
    return Listing(
        id=row['id'],
        kind=row['type'],
        status=row['status'],
        offered_item=ListingItem(row['selling_id'], row['selling_name'], row['selling_icon'],
                                 row['selling_amount'], row['selling_rarity']),
        wanted_item=ListingItem(row['buying_id'], row['buying_name'], row['buying_icon'],
                                row['buying_amount'], row['buying_rarity']),
        seller_profile=SellerProfile(
            full_name=row['user_full_name'],
            handle=row['user_username'],
            external_game_id=row['user_embark_id'],
            avatar_ref=row['user_avatar_url'],
        ),
        created_at=row['created_at'],
        updated_at=row['updated_at'],
        user_id=row['user_id'],
        description=row['description'],
    )


def _row_to_record(row: sqlite3.Row) -> DeliveryRecord:
    return DeliveryRecord(
        listing_id=row['listing_id'],
        message_handle=row['message_id'],
        channel_ref=row['channel_id'],
        batch_sequence=row['batch_number'],
        position_in_batch=row['batch_position'],
        posted_at=row['posted_at'],
    )


class ListingStore:
    """Owns the single SQLite connection for the process."""

    def __init__(self, path: str):
        self.path = path
        self.conn: Optional[sqlite3.Connection] = None

    def open(self) -> 'ListingStore':
        if self.conn is not None:
            return self
        if self.path != ':memory:':
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.path)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        if self.path != ':memory:':
            self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.executescript(SCHEMA)
        self.conn.commit()
        logger.info(f"Database ready at {self.path}")
        for table in ('listings', 'posted_listings', 'tracked_items', 'auto_purchase_rules'):
            count = self.conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            logger.debug(f"Table '{table}' has {count} rows")
        return self

    def close(self):
        if self.conn is None:
            return
        logger.info("Closing database connection")
        self.conn.close()
        self.conn = None

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _db(self) -> sqlite3.Connection:
        if self.conn is None:
            raise RuntimeError("ListingStore is not open")
        return self.conn

    # Listings

    def upsert_if_absent(self, listing: Listing) -> bool:
        """
        Inserts a listing unless its id is already stored.

        Returns:
            bool: True if inserted, False if the id already existed
        """
        db = self._db()
        params = _listing_params(listing)
        params['fetched_at'] = _now()
        try:
            with db:
                db.execute(
                    f"INSERT INTO listings ({', '.join(params)}, posted_to_discord) "
                    f"VALUES ({', '.join(':' + key for key in params)}, 0)",
                    params,
                )
        except sqlite3.IntegrityError:
            logger.debug(f"Listing already exists: {listing.id}")
            return False
        logger.debug(f"Inserted listing: {listing.id}")
        return True

    def insert_listings(self, listings: List[Listing]) -> int:
        """Inserts many listings; returns how many were new."""
        inserted = sum(1 for listing in listings if self.upsert_if_absent(listing))
        duplicates = len(listings) - inserted
        logger.info(f"Inserted {inserted} new listings ({duplicates} duplicates skipped)")
        return inserted

    def exists(self, listing_id: str) -> bool:
        row = self._db().execute("SELECT 1 FROM listings WHERE id = ?", (listing_id,)).fetchone()
        return row is not None

    def known_ids(self, listing_ids: List[str]) -> set:
        """Returns the subset of ``listing_ids`` already stored."""
        return {listing_id for listing_id in set(listing_ids) if self.exists(listing_id)}

    def get_by_id(self, listing_id: str) -> Optional[Listing]:
        row = self._db().execute("SELECT * FROM listings WHERE id = ?", (listing_id,)).fetchone()
        if row is None:
            logger.debug(f"Listing not found: {listing_id}")
            return None
        return _row_to_listing(row)

    def list_undelivered(self) -> List[Listing]:
        """Stored listings never posted, newest first."""
        rows = self._db().execute(
            "SELECT * FROM listings WHERE posted_to_discord = 0 ORDER BY created_at DESC, rowid"
        ).fetchall()
        return [_row_to_listing(row) for row in rows]

    def set_status(self, listing_id: str, status: str, updated_at: str) -> bool:
        db = self._db()
        with db:
            cursor = db.execute(
                "UPDATE listings SET status = ?, updated_at = ? WHERE id = ?",
                (status, updated_at, listing_id),
            )
        if cursor.rowcount == 0:
            logger.warning(f"Cannot update status, listing not found: {listing_id}")
            return False
        logger.debug(f"Updated listing {listing_id} status to {status}")
        return True

    def mark_delivered(self, listing_ids: List[str]) -> int:
        if not listing_ids:
            return 0
        db = self._db()
        placeholders = ','.join('?' for _ in listing_ids)
        with db:
            cursor = db.execute(
                f"UPDATE listings SET posted_to_discord = 1 WHERE id IN ({placeholders})",
                list(listing_ids),
            )
        logger.info(f"Marked {cursor.rowcount} listings as posted")
        return cursor.rowcount

    def is_delivered(self, listing_id: str) -> bool:
        row = self._db().execute(
            "SELECT posted_to_discord FROM listings WHERE id = ?", (listing_id,)
        ).fetchone()
        return bool(row and row[0])

    # Delivery records

    def insert_delivery_if_absent(self, record: DeliveryRecord) -> bool:
        db = self._db()
        try:
            with db:
                db.execute(
                    "INSERT INTO posted_listings "
                    "(listing_id, message_id, channel_id, batch_number, batch_position, posted_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (record.listing_id, record.message_handle, record.channel_ref,
                     record.batch_sequence, record.position_in_batch, record.posted_at or _now()),
                )
        except sqlite3.IntegrityError as e:
            logger.debug(f"Delivery for listing {record.listing_id} not recorded: {e}")
            return False
        logger.debug(f"Recorded listing {record.listing_id} at message {record.message_handle} "
                     f"position {record.position_in_batch}")
        return True

    def find_by_message_and_position(self, message_handle: str, position: int) -> Optional[Listing]:
        row = self._db().execute(
            "SELECT l.* FROM listings l "
            "INNER JOIN posted_listings pl ON l.id = pl.listing_id "
            "WHERE pl.message_id = ? AND pl.batch_position = ?",
            (str(message_handle), position),
        ).fetchone()
        return _row_to_listing(row) if row is not None else None

    def get_delivery(self, listing_id: str) -> Optional[DeliveryRecord]:
        row = self._db().execute(
            "SELECT * FROM posted_listings WHERE listing_id = ?", (listing_id,)
        ).fetchone()
        return _row_to_record(row) if row is not None else None

    def list_all_deliveries(self) -> List[Tuple[Listing, DeliveryRecord]]:
        rows = self._db().execute(
            "SELECT l.*, pl.listing_id, pl.message_id, pl.channel_id, pl.batch_number, "
            "pl.batch_position, pl.posted_at "
            "FROM posted_listings pl INNER JOIN listings l ON l.id = pl.listing_id "
            "ORDER BY pl.batch_number, pl.message_id, pl.batch_position"
        ).fetchall()
        return [(_row_to_listing(row), _row_to_record(row)) for row in rows]

    def max_batch_sequence(self) -> int:
        row = self._db().execute("SELECT MAX(batch_number) FROM posted_listings").fetchone()
        return row[0] or 0

    # Tracked items

    def add_tracked_item(self, item_id: str, item_name: str) -> bool:
        db = self._db()
        try:
            with db:
                db.execute(
                    "INSERT INTO tracked_items (item_id, item_name, added_at) VALUES (?, ?, ?)",
                    (item_id, item_name, _now()),
                )
        except sqlite3.IntegrityError:
            logger.debug(f"Item already tracked: {item_id}")
            return False
        logger.info(f"Added tracked item: {item_name} ({item_id})")
        return True

    def list_tracked_items(self) -> List[TrackedItem]:
        rows = self._db().execute("SELECT * FROM tracked_items ORDER BY added_at DESC").fetchall()
        return [TrackedItem(row['item_id'], row['item_name'], row['added_at'], row['id']) for row in rows]

    def remove_tracked_item(self, item_id: str) -> bool:
        db = self._db()
        with db:
            cursor = db.execute("DELETE FROM tracked_items WHERE item_id = ?", (item_id,))
        return cursor.rowcount > 0

    # Auto-purchase rules

    def add_rule(self, rule: AutoPurchaseRule) -> int:
        if rule.rule_type not in RULE_TYPES:
            raise ValueError(f"Unknown rule type: {rule.rule_type}")
        db = self._db()
        with db:
            cursor = db.execute(
                "INSERT INTO auto_purchase_rules (rule_type, item_id, max_seeds, enabled, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (rule.rule_type, rule.item_id, rule.max_seeds, int(rule.enabled), _now()),
            )
        logger.info(f"Added auto-purchase rule: {rule.rule_type} (ID: {cursor.lastrowid})")
        return cursor.lastrowid

    def list_enabled_rules(self) -> List[AutoPurchaseRule]:
        rows = self._db().execute(
            "SELECT * FROM auto_purchase_rules WHERE enabled = 1 ORDER BY id"
        ).fetchall()
        return [
            AutoPurchaseRule(
                rule_type=row['rule_type'],
                item_id=row['item_id'],
                max_seeds=row['max_seeds'],
                enabled=bool(row['enabled']),
                id=row['id'],
            )
            for row in rows
        ]

    def delete_rule(self, rule_id: int) -> bool:
        db = self._db()
        with db:
            cursor = db.execute("DELETE FROM auto_purchase_rules WHERE id = ?", (rule_id,))
        return cursor.rowcount > 0

    def set_rule_enabled(self, rule_id: int, enabled: bool) -> bool:
        db = self._db()
        with db:
            cursor = db.execute(
                "UPDATE auto_purchase_rules SET enabled = ? WHERE id = ?", (int(enabled), rule_id)
            )
        return cursor.rowcount > 0
