import logging
from typing import List
from config import Batch, Listing

logger = logging.getLogger(__name__)


def make_batches(listings: List[Listing], batch_size: int, start_sequence: int = 1) -> List[Batch]:
    """
    Splits listings into consecutive batches of ``batch_size``.

    Args:
        listings: Listings in delivery order
        batch_size: Maximum listings per batch, at least 1
        start_sequence: Sequence number of the first batch

    Returns:
        List[Batch]: Batches numbered consecutively; only the last may be short
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be at least 1, got {batch_size}")

    batches = []
    for offset in range(0, len(listings), batch_size):
        batch = Batch(
            sequence_number=start_sequence + len(batches),
            listings=listings[offset:offset + batch_size],
        )
        logger.debug(f"Created batch #{batch.sequence_number} with {len(batch.listings)} listings")
        batches.append(batch)

    logger.info(f"Created {len(batches)} batches from {len(listings)} listings")
    return batches
