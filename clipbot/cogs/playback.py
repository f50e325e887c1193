"""
Playback Cog - play stored clips into another member's voice channel
"""
import logging

import discord
from discord import app_commands
from discord.ext import commands

from clipbot.cogs.sounds import sound_autocomplete
from clipbot.config import config
from clipbot.voice.session import EndReason, SessionOptions, VoiceSession

logger = logging.getLogger(__name__)


class PlaybackCog(commands.Cog):
    """Targeted clip playback backed by voice sessions."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        # discord.py allows one voice connection per guild
        self.sessions: dict[int, VoiceSession] = {}

    async def cog_unload(self):
        """Stop every running session."""
        for session in list(self.sessions.values()):
            session.end(EndReason.ERROR, RuntimeError("Bot is shutting down"))
        for session in list(self.sessions.values()):
            await session.wait_destroyed()
        logger.info("Playback cog unloaded")

    async def _check_target(
        self,
        interaction: discord.Interaction,
        user: discord.Member,
        soundname: str,
        permissions: tuple[str, ...],
    ) -> discord.Member | None:
        """Common preconditions. Replies and returns None when one fails."""
        guild = interaction.guild
        if guild is None:
            await interaction.response.send_message("❌ This command can only be used in a server!", ephemeral=True)
            return None

        if not self.bot.store.exists(soundname):
            await interaction.response.send_message(
                f'❌ Sound "{soundname}" not found! Use `/listsounds` to see available sounds.', ephemeral=True
            )
            return None

        if self.bot.store.is_reserved(soundname):
            await interaction.response.send_message(
                f'⏳ Sound "{soundname}" is still downloading. Try again when it\'s done.', ephemeral=True
            )
            return None

        # The cached member carries the voice state
        member = guild.get_member(user.id)
        if member is None:
            await interaction.response.send_message("❌ User not found in this server!", ephemeral=True)
            return None

        if member.voice is None or member.voice.channel is None:
            await interaction.response.send_message(
                f"❌ {member.display_name} is not in a voice channel!", ephemeral=True
            )
            return None

        perms = member.voice.channel.permissions_for(guild.me)
        missing = [p for p in permissions if not getattr(perms, p)]
        if missing:
            readable = ", ".join(p.replace("_", " ").title() for p in missing)
            await interaction.response.send_message(
                f"❌ I'm missing permissions in that channel: {readable}", ephemeral=True
            )
            return None

        if guild.id in self.sessions:
            await interaction.response.send_message(
                "❌ I'm already playing something in this server. Try again when it's done.", ephemeral=True
            )
            return None

        return member

    async def _run_session(self, interaction: discord.Interaction, target: discord.Member, soundname: str, options: SessionOptions):
        guild = interaction.guild
        clip_path = self.bot.store.resolve_path(soundname)
        if clip_path is None:
            await interaction.response.send_message(f'❌ Could not get path for sound "{soundname}"!', ephemeral=True)
            return

        session = VoiceSession(self.bot, interaction, target, soundname, clip_path, options=options)
        # Claim the guild before the first await
        self.sessions[guild.id] = session
        try:
            await interaction.response.defer()
            reason = await session.run()
            logger.info(f"Session {soundname!r} for {target} in {guild.name} ended: {reason.value}")
        finally:
            self.sessions.pop(guild.id, None)

    # ==================== COMMANDS ====================

    @app_commands.command(name="playfor", description="Play a sound in a user's voice channel")
    @app_commands.describe(
        user="The user whose voice channel to join",
        soundname="The name of the sound to play",
        follow="Follow the user if they switch channels",
        controls="Show a stop button",
    )
    @app_commands.autocomplete(soundname=sound_autocomplete)
    async def playfor(
        self,
        interaction: discord.Interaction,
        user: discord.Member,
        soundname: str,
        follow: bool = False,
        controls: bool = False,
    ):
        """Join the target's voice channel, play a sound, leave."""
        target = await self._check_target(interaction, user, soundname, ("connect", "speak"))
        if target is None:
            return

        options = SessionOptions(
            follow=follow,
            stop_button=controls,
            connect_timeout=config.CONNECT_TIMEOUT,
            playback_timeout=config.PLAYBACK_TIMEOUT,
            reconnect_timeout=config.RECONNECT_TIMEOUT,
        )
        await self._run_session(interaction, target, soundname, options)

    @app_commands.command(name="lockin", description="Lock a user in a temporary channel and play a sound")
    @app_commands.describe(user="The user to lock in", soundname="The name of the sound to play")
    @app_commands.autocomplete(soundname=sound_autocomplete)
    async def lockin(self, interaction: discord.Interaction, user: discord.Member, soundname: str):
        """Move the target into a temporary channel, play a sound, move them back."""
        target = await self._check_target(
            interaction, user, soundname, ("connect", "speak", "manage_channels", "move_members")
        )
        if target is None:
            return

        options = SessionOptions(
            temporary_channel=True,
            stop_button=True,
            connect_timeout=config.TEMP_CONNECT_TIMEOUT,
            playback_timeout=config.PLAYBACK_TIMEOUT,
            reconnect_timeout=config.RECONNECT_TIMEOUT,
            temp_channel_name=config.TEMP_CHANNEL_NAME,
        )
        await self._run_session(interaction, target, soundname, options)


async def setup(bot: commands.Bot):
    await bot.add_cog(PlaybackCog(bot))
