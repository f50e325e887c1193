import logging

import discord
from discord import app_commands
from discord.ext import commands

from clipbot.config import config

logger = logging.getLogger(__name__)

# Discord's attachment limit for most servers
MAX_LOG_BYTES = 25 * 1024 * 1024


class AdminCog(commands.Cog):
    """Administrative commands for bot management."""

    def __init__(self, bot: commands.Bot):
        self.bot = bot

    @app_commands.command(name="logs", description="Get the latest bot logs (Admin only)")
    @app_commands.default_permissions(administrator=True)
    async def get_logs(self, interaction: discord.Interaction):
        """Send the log file as an attachment."""
        log_path = config.LOG_PATH

        if not log_path.exists():
            await interaction.response.send_message("Log file not found.", ephemeral=True)
            return

        if log_path.stat().st_size > MAX_LOG_BYTES:
            await interaction.response.send_message("Log file is too large to send via Discord.", ephemeral=True)
            return

        await interaction.response.send_message("Here are the latest logs:", file=discord.File(log_path), ephemeral=True)

    @commands.command(name="deploy")
    @commands.is_owner()
    @commands.guild_only()
    async def deploy(self, ctx: commands.Context):
        """Register the slash commands in this server right away."""
        self.bot.tree.copy_global_to(guild=ctx.guild)
        synced = await self.bot.tree.sync(guild=ctx.guild)
        logger.info(f"Deployed {len(synced)} commands to {ctx.guild.name}")
        await ctx.reply("Deployed!")

    @deploy.error
    async def deploy_error(self, ctx: commands.Context, error: commands.CommandError):
        if isinstance(error, (commands.NotOwner, commands.NoPrivateMessage)):
            return
        logger.error(f"Deploy failed: {error}")
        await ctx.reply("❌ Deploy failed, check the logs.")


async def setup(bot: commands.Bot):
    await bot.add_cog(AdminCog(bot))
