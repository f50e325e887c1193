"""
Sounds Cog - add, upload, list and delete stored clips
"""
import logging
import math

import discord
from discord import app_commands
from discord.ext import commands

from clipbot.config import config
from clipbot.exceptions import ClipExistsError, InvalidSourceError, TransferError
from clipbot.services.media import AcquiredClip, MediaInfo

logger = logging.getLogger(__name__)

COLOR_PROGRESS = discord.Color(0x0099FF)
COLOR_SUCCESS = discord.Color(0x00FF00)
COLOR_FAILURE = discord.Color(0xFF0000)


def format_duration(seconds: int | None) -> str:
    if not seconds:
        return "Unknown"
    return f"{seconds // 60}:{seconds % 60:02d}"


def format_size(size: int) -> str:
    return f"{round(size / 1024)} KB"


async def sound_autocomplete(interaction: discord.Interaction, current: str) -> list[app_commands.Choice[str]]:
    """Suggest stored clip names. Discord allows at most 25 choices."""
    store = interaction.client.store
    if store is None:
        return []
    current = current.lower()
    names = [n for n in store.list() if current in n.lower()]
    return [app_commands.Choice(name=n, value=n) for n in names[:25]]


def download_embed(name: str, title: str, status: str) -> discord.Embed:
    return discord.Embed(
        title="🎵 Downloading Sound",
        description=f"**Name:** {name}\n**Video:** {title}\n{status}",
        color=COLOR_PROGRESS,
        timestamp=discord.utils.utcnow(),
    )


def added_embed(clip: AcquiredClip, source_label: str = "Video") -> discord.Embed:
    embed = discord.Embed(
        title="✅ Sound Added Successfully",
        description=f"**Name:** {clip.name}\n**{source_label}:** {clip.title or 'Unknown'}\n**File:** {clip.path.name}",
        color=COLOR_SUCCESS,
        timestamp=discord.utils.utcnow(),
    )
    embed.add_field(name="File Size", value=format_size(clip.size), inline=True)
    embed.add_field(name="Duration", value=format_duration(clip.duration_seconds), inline=True)
    embed.set_footer(text="You can now use this sound with /playfor and /lockin!")
    return embed


def failure_embed(title: str, description: str) -> discord.Embed:
    return discord.Embed(
        title=title,
        description=description,
        color=COLOR_FAILURE,
        timestamp=discord.utils.utcnow(),
    )


class SoundsCog(commands.Cog):
    """Clip storage commands."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot

    @property
    def store(self):
        return self.bot.store

    @property
    def media(self):
        return self.bot.media

    # ==================== COMMANDS ====================

    @app_commands.command(name="addsound", description="Download and store a sound from YouTube")
    @app_commands.describe(name="Name to store the sound under", url="YouTube URL to download")
    async def addsound(self, interaction: discord.Interaction, name: str, url: str):
        """Download the audio of a YouTube video into the sound library."""
        if self.media.parse_url(url) is None:
            await interaction.response.send_message("❌ Invalid YouTube URL provided!", ephemeral=True)
            return

        if self.store.exists(name) or self.store.is_reserved(name):
            await interaction.response.send_message(
                f'❌ A sound with the name "{name}" already exists!', ephemeral=True
            )
            return

        await interaction.response.defer()

        try:
            info: MediaInfo = await self.media.probe(url)
            await interaction.edit_original_response(
                embed=download_embed(name, info.title, "**Status:** Starting download...")
            )

            async def on_progress(percent: int):
                await interaction.edit_original_response(
                    embed=download_embed(name, info.title, f"**Progress:** {percent}%")
                )

            clip = await self.media.acquire_from_url(name, url, on_progress=on_progress, media=info)
        except ClipExistsError as e:
            await interaction.edit_original_response(content=f"❌ {e.message}", embed=None)
            return
        except (TransferError, InvalidSourceError) as e:
            logger.error(f"Failed to add sound {name!r} from {url}: {e.message}")
            await interaction.edit_original_response(embed=failure_embed("❌ Download Failed", e.message))
            return

        await interaction.edit_original_response(embed=added_embed(clip))

    @app_commands.command(name="uploadsound", description="Upload an audio file as a sound")
    @app_commands.describe(name="Name to store the sound under", file="Audio file (mp3, wav, ogg, m4a, flac)")
    async def uploadsound(self, interaction: discord.Interaction, name: str, file: discord.Attachment):
        """Store an uploaded audio file in the sound library."""
        try:
            self.media.validate_attachment(file)
        except InvalidSourceError as e:
            await interaction.response.send_message(f"❌ {e.message}", ephemeral=True)
            return

        if self.store.exists(name) or self.store.is_reserved(name):
            await interaction.response.send_message(
                f'❌ Sound "{name}" already exists! Use a different name or delete the existing sound first.',
                ephemeral=True,
            )
            return

        await interaction.response.defer()

        try:
            clip = await self.media.acquire_from_attachment(name, file)
        except ClipExistsError as e:
            await interaction.edit_original_response(content=f"❌ {e.message}")
            return
        except (TransferError, InvalidSourceError) as e:
            logger.error(f"Failed to upload sound {name!r}: {e.message}")
            await interaction.edit_original_response(content="❌ Failed to upload sound file. Please try again.")
            return

        await interaction.edit_original_response(
            content=f'✅ Successfully uploaded sound "{name}" ({format_size(clip.size)})! You can now play it with other commands.'
        )

    @app_commands.command(name="listsounds", description="List all stored sounds")
    @app_commands.describe(page="Page number")
    async def listsounds(self, interaction: discord.Interaction, page: app_commands.Range[int, 1] = 1):
        """Show one page of the sound library."""
        sounds = self.store.list()
        if not sounds:
            await interaction.response.send_message(
                "📂 No sounds stored yet. Use `/addsound` to add some!", ephemeral=True
            )
            return

        per_page = config.SOUNDS_PER_PAGE
        total_pages = math.ceil(len(sounds) / per_page)
        page = min(page, total_pages)
        start = (page - 1) * per_page

        lines = []
        for index, sound in enumerate(sounds[start:start + per_page], start=start + 1):
            info = self.store.info(sound)
            size = f"({format_size(info.size)})" if info else ""
            lines.append(f"{index}. {sound} {size}".rstrip())

        embed = discord.Embed(
            title="🎵 Stored Sounds",
            description="\n".join(lines),
            color=COLOR_PROGRESS,
            timestamp=discord.utils.utcnow(),
        )
        embed.set_footer(text=f"Page {page}/{total_pages} • Total sounds: {len(sounds)}")
        await interaction.response.send_message(embed=embed)

    @app_commands.command(name="deletesound", description="Delete a stored sound")
    @app_commands.describe(name="Name of the sound to delete")
    @app_commands.autocomplete(name=sound_autocomplete)
    async def deletesound(self, interaction: discord.Interaction, name: str):
        """Remove a sound from the library."""
        if self.store.is_reserved(name):
            await interaction.response.send_message(
                f'⏳ Sound "{name}" is still downloading. Try again when it\'s done.', ephemeral=True
            )
            return

        if not self.store.exists(name):
            await interaction.response.send_message(f'❌ No sound found with the name "{name}".', ephemeral=True)
            return

        if not self.store.delete(name):
            await interaction.response.send_message(
                f'❌ Failed to delete sound "{name}". Please try again.', ephemeral=True
            )
            return

        embed = discord.Embed(
            title="✅ Sound Deleted",
            description=f"Successfully deleted sound: **{name}**",
            color=COLOR_SUCCESS,
            timestamp=discord.utils.utcnow(),
        )
        await interaction.response.send_message(embed=embed)


async def setup(bot: commands.Bot):
    await bot.add_cog(SoundsCog(bot))
