import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List
import requests
from config import Config, Listing
from transform import normalize_many, parse_timestamp

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def created_sort_key(listing: Listing) -> datetime:
    """Orders by createdAt; unparsable timestamps sort last."""
    return parse_timestamp(listing.created_at) or EPOCH


class ListingsClient:
    """Fetches trade listings from the public listings API."""

    def __init__(self, config: Config):
        self.config = config
        self.base_url = self.config.API_BASE_URL
        self.session = requests.Session()
        self.session.headers.update({
            'User-Agent': 'trade-listings-bot/0.1 (+Discord notifier)',
            'Accept': 'application/json',
        })

    def fetch_raw(self, listing_type: str) -> List[Dict[str, Any]]:
        """
        Requests one side of the market and returns the raw records.

        Raises:
            requests.RequestException: If the API cannot be reached or answers with an error status
            ValueError: If the response body is not the expected JSON shape
        """
        url = f"{self.base_url}/listings"
        params = {
            'page': 1,
            'limit': self.config.API_PAGE_LIMIT,
            'sortBy': 'created_at',
            'sortOrder': 'desc',
            'listing_type': listing_type,
        }
        start = time.monotonic()
        try:
            response = self.session.get(url, params=params, timeout=self.config.API_TIMEOUT)
            response.raise_for_status()
            payload = response.json()
        except requests.JSONDecodeError as e:
            logger.error(f"Failed to decode {listing_type} listings response: {e}")
            raise ValueError(f"Invalid JSON from listings API ({listing_type})")
        except requests.RequestException as e:
            logger.error(f"Failed to fetch {listing_type} listings after {time.monotonic() - start:.2f}s: {e}")
            raise

        if not isinstance(payload, dict) or not isinstance(payload.get('data'), list):
            raise ValueError(f"Unexpected listings API response shape ({listing_type})")

        records = payload['data']
        logger.info(f"Fetched {len(records)} {listing_type} listings in {time.monotonic() - start:.2f}s")
        return records

    def fetch_listings(self, listing_type: str) -> List[Listing]:
        """Fetches and normalizes one side; malformed records are skipped."""
        listings, errors = normalize_many(self.fetch_raw(listing_type))
        if errors:
            logger.warning(f"Skipped {len(errors)} malformed {listing_type} listings")
        return listings

    def fetch_sell_listings(self) -> List[Listing]:
        return self.fetch_listings('sell')

    def fetch_buy_listings(self) -> List[Listing]:
        return self.fetch_listings('buy')

    async def fetch_all_listings(self) -> List[Listing]:
        """
        Fetches sell and buy listings in parallel.

        Returns:
            List[Listing]: Both sides combined, newest first

        Raises:
            requests.RequestException: If either request fails
        """
        sell_listings, buy_listings = await asyncio.gather(
            asyncio.to_thread(self.fetch_sell_listings),
            asyncio.to_thread(self.fetch_buy_listings),
        )
        all_listings = sell_listings + buy_listings
        all_listings.sort(key=created_sort_key, reverse=True)
        logger.info(f"Fetched {len(all_listings)} total listings "
                    f"({len(sell_listings)} sell, {len(buy_listings)} buy)")
        return all_listings

    def close(self):
        self.session.close()
