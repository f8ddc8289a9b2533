import discord
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, List, Optional
from config import Batch, Config, Listing
from transform import CURRENCY_ITEM_ID, parse_timestamp
import asyncio

logger = logging.getLogger(__name__)

NUMBER_EMOJIS = ['1️⃣', '2️⃣', '3️⃣', '4️⃣', '5️⃣']

KIND_EMOJIS = {
    'sell': '📤',
    'buy': '📥',
}

STATUS_BADGES = {
    'active': '🟢 **ACTIVE**',
    'in-progress': '🟡 **IN PROGRESS**',
    'completed': '✅ **COMPLETED**',
    'cancelled': '❌ **CANCELLED**',
}

BUTTON_ACTION = 'buy'

InteractionHandler = Callable[[str, str, str, str], Awaitable[str]]


@dataclass(frozen=True)
class InteractionReference:
    """What a buy button points at."""
    listing_id: str
    position: int


def build_custom_id(listing_id: str, position: int) -> str:
    """Button custom id, ``buy:<listingId>:<position>`` (Discord allows 100 chars)."""
    return f"{BUTTON_ACTION}:{listing_id}:{position}"


def parse_interaction_reference(custom_id: str) -> Optional[InteractionReference]:
    """
    Parses a button custom id back into a listing reference.

    Returns:
        InteractionReference or None if the id was not produced by build_custom_id
    """
    if not isinstance(custom_id, str):
        return None
    action, sep, rest = custom_id.partition(':')
    listing_id, sep2, position = rest.rpartition(':')
    if action != BUTTON_ACTION or not sep or not sep2 or not listing_id:
        logger.warning(f"Invalid button custom ID format: {custom_id}")
        return None
    try:
        position_number = int(position)
    except ValueError:
        logger.warning(f"Invalid button position in custom ID: {custom_id}")
        return None
    if position_number < 1:
        return None
    return InteractionReference(listing_id=listing_id, position=position_number)


def format_status(status: str) -> str:
    return STATUS_BADGES.get(status, f"**{status.upper()}**")


def format_listing_entry(listing: Listing, position: int) -> str:
    """Renders one numbered listing for the batch embed."""
    number = NUMBER_EMOJIS[position - 1] if position <= len(NUMBER_EMOJIS) else f"{position}."
    created = parse_timestamp(listing.created_at)
    posted = discord.utils.format_dt(created, 'R') if created else listing.created_at
    currency_trade = CURRENCY_ITEM_ID in (listing.offered_item.item_id, listing.wanted_item.item_id)

    lines = [
        f"{number} **{KIND_EMOJIS.get(listing.kind, '')} {listing.kind.upper()}** • {format_status(listing.status)}",
        f"┣ **Offering:** {listing.offered_item.display_name} ×{listing.offered_item.quantity}",
        f"┣ **Wanting:** {listing.wanted_item.display_name} ×{listing.wanted_item.quantity}"
        + (' 💰' if currency_trade else ''),
        f"┣ **Seller:** `{listing.seller_profile.handle}`",
        f"┗ **Posted:** {posted}",
    ]
    if listing.description:
        lines.append(f"   💬 _\"{listing.description}\"_")
    return '\n'.join(lines)


def render_batch_embed(listings: List[Listing], sequence_number: int,
                       timestamp: Optional[datetime] = None, updated: bool = False) -> discord.Embed:
    """
    Builds the embed for a batch message.

    Args:
        listings: Listings in position order
        sequence_number: The batch number shown in the title
        timestamp: Embed timestamp, defaults to now
        updated: Use the status-update footer instead of the purchase hint

    Returns:
        discord.Embed: The rendered message content
    """
    embed = discord.Embed(
        title=f"📋 New Listings (Batch #{sequence_number})",
        description='\n\n'.join(format_listing_entry(listing, index + 1)
                                for index, listing in enumerate(listings)),
        color=discord.Color.blurple(),
        timestamp=timestamp or discord.utils.utcnow(),
    )
    count = f"{len(listings)} listing{'s' if len(listings) != 1 else ''}"
    hint = 'Status updates shown in real-time' if updated else 'Click buttons below to purchase'
    embed.set_footer(text=f"{count} • {hint}")
    return embed


def build_batch_view(batch: Batch) -> discord.ui.View:
    """One numbered buy button per listing, in position order."""
    view = discord.ui.View(timeout=None)
    for index, listing in enumerate(batch.listings):
        position = index + 1
        view.add_item(discord.ui.Button(
            style=discord.ButtonStyle.primary,
            label=f"Buy Item {position}",
            custom_id=build_custom_id(listing.id, position),
            emoji=NUMBER_EMOJIS[index] if index < len(NUMBER_EMOJIS) else None,
        ))
    return view


class DiscordNotifier:
    """Handles Discord delivery of listing batches and button presses."""

    def __init__(self, config: Config):
        """Initialize the Discord notifier with configuration."""
        self.config = config
        self.channel_id = config.DISCORD_CHANNEL_ID
        self.interaction_handler: Optional[InteractionHandler] = None

        intents = discord.Intents.default()
        intents.guilds = True

        self.client = discord.Client(intents=intents)
        self._ready = asyncio.Event()

        @self.client.event
        async def on_ready():
            """Event handler for when Discord client is ready."""
            logger.info(f'Connected to Discord as {self.client.user}')
            logger.info(f'Connected to {len(self.client.guilds)} guilds')
            await self.client.change_presence(
                activity=discord.Activity(type=discord.ActivityType.watching, name='Arc Raiders Trading'),
                status=discord.Status.online,
            )
            self._ready.set()

        @self.client.event
        async def on_interaction(interaction: discord.Interaction):
            if interaction.type != discord.InteractionType.component:
                return
            await self.handle_button(interaction)

        @self.client.event
        async def on_resumed():
            logger.info('Discord session resumed')

        @self.client.event
        async def on_disconnect():
            logger.warning('Discord client disconnected')

    @property
    def channel_ref(self) -> str:
        return str(self.channel_id)

    async def start(self):
        """Start the Discord client."""
        try:
            await self.client.start(self.config.DISCORD_TOKEN)
        except Exception as e:
            logger.error(f"Failed to start Discord client: {e}")
            raise

    async def close(self):
        """Close the Discord client."""
        try:
            await self.client.close()
        except Exception as e:
            logger.error(f"Failed to close Discord client: {e}")
            raise

    async def wait_until_ready(self):
        """Wait until the Discord client is ready."""
        await self._ready.wait()

    async def get_channel(self, channel_id: Optional[int] = None):
        """Returns the target channel from cache or the API, or None."""
        channel_id = int(channel_id or self.channel_id)
        channel = self.client.get_channel(channel_id)
        if channel is not None:
            return channel
        try:
            return await self.client.fetch_channel(channel_id)
        except (discord.NotFound, discord.Forbidden) as e:
            logger.error(f"Could not access channel {channel_id}: {e}")
            return None

    async def verify_channel(self):
        """
        Raises:
            ConnectionError: If the configured channel cannot be used
        """
        channel = await self.get_channel()
        if channel is None or not hasattr(channel, 'send'):
            raise ConnectionError(f"Could not access channel {self.channel_id}. "
                                  f"Please verify channel ID and bot permissions.")
        logger.info(f"Successfully verified access to channel: {channel}")

    def render_batch_embed(self, listings: List[Listing], sequence_number: int) -> discord.Embed:
        return render_batch_embed(listings, sequence_number, updated=True)

    async def post_batch(self, batch: Batch) -> Optional[str]:
        """
        Sends one batch as an embed with buy buttons.

        Returns:
            The message id as a string, or None if the message could not be sent
        """
        channel = await self.get_channel()
        if channel is None or not hasattr(channel, 'send'):
            logger.error(f"Channel not found or not text-based: {self.channel_id}")
            return None
        try:
            message = await channel.send(
                embed=render_batch_embed(batch.listings, batch.sequence_number, timestamp=batch.created_at),
                view=build_batch_view(batch),
            )
        except discord.HTTPException as e:
            logger.error(f"Failed to post batch #{batch.sequence_number}: {e}")
            return None
        logger.info(f"Posted batch #{batch.sequence_number} (Message ID: {message.id})")
        return str(message.id)

    async def edit_message(self, message_handle: str, channel_ref: str, embed: discord.Embed) -> bool:
        """Replaces the embed of a delivered message; buttons are left as they are."""
        channel = await self.get_channel(int(channel_ref))
        if channel is None:
            return False
        try:
            message = await channel.fetch_message(int(message_handle))
            await message.edit(embed=embed)
        except discord.NotFound:
            logger.warning(f"Message not found: {message_handle}")
            return False
        except discord.HTTPException as e:
            logger.error(f"Failed to edit message {message_handle}: {e}")
            return False
        logger.info(f"Updated message {message_handle} with new status")
        return True

    async def handle_button(self, interaction: discord.Interaction):
        custom_id = (interaction.data or {}).get('custom_id', '')
        logger.info(f"Button clicked by {interaction.user}: {custom_id}")
        try:
            if self.interaction_handler is None:
                reply = 'This bot is still starting up. Please try again shortly.'
            else:
                reply = await self.interaction_handler(
                    str(interaction.message.id), custom_id, str(interaction.user.id), str(interaction.user)
                )
            await interaction.response.send_message(reply, ephemeral=True)
        except Exception as e:
            logger.error(f"Error handling button interaction: {e}", exc_info=True)
            if not interaction.response.is_done():
                try:
                    await interaction.response.send_message(
                        error_message('An error occurred while processing your request. Please try again.'),
                        ephemeral=True,
                    )
                except discord.HTTPException as reply_error:
                    logger.error(f"Failed to send error message to user: {reply_error}")


def error_message(text: str) -> str:
    return f"❌ **Error**\n\n{text}"
