"""
clipbot - Main Entry Point
"""
import asyncio
import logging
import os
import sys
from pathlib import Path

import discord
from discord import app_commands
from discord.ext import commands

from clipbot.config import config
from clipbot.exceptions import ClipBotError

logger = logging.getLogger("bot")


def setup_logging() -> None:
    """Log to stdout and to the file served by /logs."""
    config.LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(config.LOG_PATH, encoding="utf-8"),
        ],
    )
    logging.getLogger("discord").setLevel(logging.INFO)
    logging.getLogger("discord.gateway").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


class ClipCommandTree(app_commands.CommandTree):
    """Command tree whose error hook is the last stop for failed commands."""

    async def on_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError) -> None:
        if isinstance(error, app_commands.CommandNotFound):
            await self._reply(interaction, "❌ Unknown command!")
            return

        if isinstance(error, app_commands.CheckFailure):
            await self._reply(interaction, "❌ You don't have permission to use that command.")
            return

        original = getattr(error, "original", error)
        if isinstance(original, ClipBotError):
            await self._reply(interaction, f"❌ {original.message}")
            return

        command = interaction.command.qualified_name if interaction.command else "unknown"
        logger.error(f"Unhandled error in /{command}", exc_info=original)
        await self._reply(interaction, "❌ Something went wrong while running that command.")

    @staticmethod
    async def _reply(interaction: discord.Interaction, content: str) -> None:
        try:
            if interaction.response.is_done():
                await interaction.followup.send(content, ephemeral=True)
            else:
                await interaction.response.send_message(content, ephemeral=True)
        except discord.HTTPException as e:
            logger.warning(f"Failed to send error reply: {e}")


class ClipBot(commands.Bot):
    """Soundboard bot: stores clips and plays them into voice channels."""

    def __init__(self):
        intents = discord.Intents.default()
        intents.message_content = True
        intents.voice_states = True
        intents.guilds = True

        super().__init__(
            command_prefix=config.COMMAND_PREFIX,
            intents=intents,
            help_command=None,
            tree_cls=ClipCommandTree,
        )

        # Initialized in setup_hook
        self.store = None
        self.media = None

    async def setup_hook(self) -> None:
        """Called when the bot is starting up."""
        logger.info("Setting up bot...")
        asyncio.get_running_loop().set_exception_handler(self._loop_exception_handler)

        from clipbot.services.clip_store import ClipStore
        from clipbot.services.media import MediaService

        self.store = ClipStore(config.SOUNDS_DIR)
        self.media = MediaService(
            self.store,
            cookies_path=config.YTDL_COOKIES_PATH,
            max_upload_bytes=config.max_upload_bytes,
        )
        logger.info(f"Sound storage at {self.store.sounds_dir.resolve()}")

        # Load all cogs from the cogs directory
        cogs_dir = Path(__file__).parent / "cogs"
        for cog_file in sorted(cogs_dir.glob("*.py")):
            if cog_file.name.startswith("_"):
                continue
            cog_name = f"clipbot.cogs.{cog_file.stem}"
            try:
                await self.load_extension(cog_name)
                logger.info(f"Loaded cog: {cog_name}")
            except Exception as e:
                logger.error(f"Failed to load cog {cog_name}: {e}")

        logger.info("Syncing slash commands...")
        await self.tree.sync()
        logger.info("Slash commands synced")

    @staticmethod
    def _loop_exception_handler(loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exc = context.get("exception")
        logger.error(f"Unhandled failure: {context.get('message', 'no message')}", exc_info=exc)

    async def on_ready(self) -> None:
        """Called when the bot is fully ready."""
        logger.info(f"Logged in as {self.user} (ID: {self.user.id})")
        logger.info(f"Connected to {len(self.guilds)} guild(s)")

        activity = discord.Activity(type=discord.ActivityType.listening, name="/listsounds")
        await self.change_presence(activity=activity)

    async def on_message(self, message: discord.Message) -> None:
        if message.author.bot or not message.guild:
            return
        if self.user and self.user in message.mentions:
            await message.reply("Hi! Use `/listsounds` to see what I can play, or `/addsound` to add a new one.")
        await self.process_commands(message)

    async def on_error(self, event_method: str, /, *args, **kwargs) -> None:
        logger.exception(f"Unhandled error in event {event_method}")

    async def close(self) -> None:
        """Cleanup when the bot is shutting down."""
        logger.info("Shutting down...")

        # Stops active voice sessions
        try:
            await self.unload_extension("clipbot.cogs.playback")
        except commands.ExtensionNotLoaded:
            logger.debug("Playback cog was not loaded")

        for vc in self.voice_clients:
            try:
                await vc.disconnect(force=True)
            except Exception as e:
                logger.warning(f"Failed to disconnect voice client: {e}")

        if self.media:
            await self.media.shutdown()

        await super().close()
        logger.info("Shutdown complete.")


async def main():
    """Main entry point."""
    setup_logging()

    if not config.DISCORD_TOKEN:
        logger.critical("DISCORD_TOKEN is not set. Add it to the environment or a .env file.")
        sys.exit(1)

    bot = ClipBot()
    async with bot:
        try:
            await bot.start(config.DISCORD_TOKEN)
        except KeyboardInterrupt:
            logger.info("Shutdown initiated by user...")
        except Exception as e:
            logger.error(f"Bot error: {e}")
        finally:
            if not bot.is_closed():
                await bot.close()


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        os._exit(0)
    except Exception as e:
        logger.critical(f"Fatal error: {e}")
        os._exit(1)


if __name__ == "__main__":
    run()
