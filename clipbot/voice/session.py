"""
Voice Session - connect, play one clip, tear down exactly once
"""
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable

import discord

from clipbot.exceptions import InvalidTransitionError

logger = logging.getLogger(__name__)


class SessionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    READY = "ready"
    PLAYING = "playing"
    ENDING = "ending"
    DESTROYED = "destroyed"


class EndReason(Enum):
    FINISHED = "finished"
    STOPPED = "stopped"
    TIMEOUT = "timeout"
    CONNECT_TIMEOUT = "connect-timeout"
    DISCONNECTED = "disconnected"
    PLAYBACK_ERROR = "playback-error"
    ERROR = "error"


_LIVE_STATES = (SessionState.IDLE, SessionState.CONNECTING, SessionState.READY, SessionState.PLAYING)

_TRANSITIONS = {
    SessionState.IDLE: {SessionState.CONNECTING, SessionState.ENDING},
    SessionState.CONNECTING: {SessionState.READY, SessionState.ENDING},
    SessionState.READY: {SessionState.PLAYING, SessionState.ENDING},
    SessionState.PLAYING: {SessionState.ENDING},
    SessionState.ENDING: {SessionState.DESTROYED},
    SessionState.DESTROYED: set(),
}


@dataclass
class SessionOptions:
    """Variant flags and timeouts for a voice session."""
    follow: bool = False
    temporary_channel: bool = False
    stop_button: bool = False
    connect_timeout: float = 30.0
    playback_timeout: float = 30.0
    reconnect_timeout: float = 5.0
    temp_channel_name: str = "Sound Cellar"


class ListenerSubscription:
    """A bot event listener that is removed exactly once."""

    def __init__(self, bot, event: str, callback: Callable[..., Any]):
        self.bot = bot
        self.event = event
        self.callback = callback
        self.active = False

    @classmethod
    def register(cls, bot, event: str, callback: Callable[..., Any]) -> "ListenerSubscription":
        sub = cls(bot, event, callback)
        bot.add_listener(callback, event)
        sub.active = True
        return sub

    def release(self) -> bool:
        if not self.active:
            return False
        self.active = False
        self.bot.remove_listener(self.callback, self.event)
        return True


class StopSessionView(discord.ui.View):
    """Stop button that only the invoking user can press."""

    def __init__(self, session: "VoiceSession", owner_id: int, timeout: float):
        super().__init__(timeout=timeout)
        self.session = session
        self.owner_id = owner_id

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        # Other users are filtered out silently
        return interaction.user.id == self.owner_id

    @discord.ui.button(label="Stop", emoji="⏹️", style=discord.ButtonStyle.danger)
    async def stop_button(self, interaction: discord.Interaction, button: discord.ui.Button):
        await interaction.response.defer()
        self.session.request_stop(interaction.user)
        self.stop()

    async def on_timeout(self):
        await self.session.clear_controls()


class VoiceSession:
    """
    One run of connect -> play -> teardown against a target's voice channel.

    `run()` drives the session to DESTROYED and returns the EndReason. Terminal
    signals (playback end, errors, stop, timeouts) may arrive any number of times
    from any callback; only the first one counts.
    """

    def __init__(
        self,
        bot,
        interaction: discord.Interaction,
        target: discord.Member,
        clip_name: str,
        clip_path: Path,
        options: SessionOptions | None = None,
        source_factory: Callable[[str], discord.AudioSource] | None = None,
    ):
        self.bot = bot
        self.interaction = interaction
        self.guild = target.guild
        self.target = target
        self.invoker_id = interaction.user.id
        self.clip_name = clip_name
        self.clip_path = Path(clip_path)
        self.options = options or SessionOptions()
        self.source_factory = source_factory or discord.FFmpegPCMAudio

        self.state = SessionState.IDLE
        self.end_reason: EndReason | None = None
        self.error: BaseException | None = None

        self.original_channel = target.voice.channel if target.voice else None
        self.channel = self.original_channel
        self.temp_channel: discord.VoiceChannel | None = None
        self.voice_client: discord.VoiceClient | None = None
        self.view: StopSessionView | None = None

        self._loop: asyncio.AbstractEventLoop | None = None
        self._ended: asyncio.Event | None = None
        self._destroyed: asyncio.Event | None = None
        self._subscription: ListenerSubscription | None = None
        self._timeout_handle: asyncio.TimerHandle | None = None
        self._probe_task: asyncio.Task | None = None
        self._move_task: asyncio.Task | None = None

    @property
    def is_live(self) -> bool:
        return self.state in _LIVE_STATES

    def _transition(self, new_state: SessionState):
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state, new_state)
        logger.debug(f"Session {self.clip_name!r} in guild {self.guild.id}: {self.state.name} -> {new_state.name}")
        self.state = new_state

    # ==================== TERMINAL SIGNALS ====================

    def end(self, reason: EndReason, error: BaseException | None = None) -> bool:
        """Signal a terminal event. Returns False if the session was already ending."""
        if not self.is_live:
            return False
        self._transition(SessionState.ENDING)
        self.end_reason = reason
        self.error = error
        if error:
            logger.warning(f"Session {self.clip_name!r} ending ({reason.value}): {error}")
        else:
            logger.info(f"Session {self.clip_name!r} ending ({reason.value})")
        if self._ended:
            self._ended.set()
        return True

    def request_stop(self, user) -> bool:
        """Stop on behalf of `user`; ignored unless it is the invoking user."""
        if user.id != self.invoker_id:
            return False
        return self.end(EndReason.STOPPED)

    def _after_playback(self, error: Exception | None):
        # Runs on the audio player thread
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._on_playback_finished, error)

    def _on_playback_finished(self, error: Exception | None):
        if error:
            self.end(EndReason.PLAYBACK_ERROR, error)
        else:
            self.end(EndReason.FINISHED)

    # ==================== LIFECYCLE ====================

    async def run(self) -> EndReason:
        self._loop = asyncio.get_running_loop()
        self._ended = asyncio.Event()
        self._destroyed = asyncio.Event()

        try:
            await self._start()
            if self.is_live:
                await self._ended.wait()
        except asyncio.CancelledError:
            self.end(EndReason.ERROR, RuntimeError("Session cancelled"))
            raise
        except Exception as e:
            logger.exception(f"Error in voice session for {self.clip_name!r}")
            self.end(EndReason.ERROR, e)
        finally:
            await self._teardown()

        await self._report_outcome()
        return self.end_reason

    async def wait_destroyed(self):
        if self._destroyed:
            await self._destroyed.wait()

    async def _start(self):
        # Ended before it started, e.g. by a shutdown
        if not self.is_live:
            return
        if self.original_channel is None:
            raise RuntimeError(f"{self.target.display_name} is not in a voice channel")

        if self.options.follow or self.options.temporary_channel:
            self._subscription = ListenerSubscription.register(
                self.bot, "on_voice_state_update", self.on_voice_state_update
            )

        if self.options.temporary_channel:
            await self._open_temp_channel()
            if not self.is_live:
                return

        self._transition(SessionState.CONNECTING)
        await self._edit_status(f'🎵 Joining {self.channel.name} to play "{self.clip_name}"...')
        # One limit for the whole CONNECTING state, handshake retries included
        try:
            self.voice_client = await asyncio.wait_for(
                self.channel.connect(timeout=self.options.connect_timeout, self_deaf=True),
                timeout=self.options.connect_timeout,
            )
        except asyncio.TimeoutError:
            self.end(EndReason.CONNECT_TIMEOUT)
            return
        if not self.is_live:
            return

        self._transition(SessionState.READY)
        source = self.source_factory(str(self.clip_path))
        self.voice_client.play(source, after=self._after_playback)
        self._transition(SessionState.PLAYING)
        self._timeout_handle = self._loop.call_later(
            self.options.playback_timeout, self.end, EndReason.TIMEOUT
        )
        logger.info(f"Playing {self.clip_name!r} for {self.target} in {self.channel.name}")

        if self.options.stop_button:
            self.view = StopSessionView(self, self.invoker_id, timeout=self.options.playback_timeout)
        await self._edit_status(self._playing_text(), view=self.view)

    async def _open_temp_channel(self):
        original = self.original_channel
        self.temp_channel = await self.guild.create_voice_channel(
            name=self.options.temp_channel_name,
            category=original.category,
            overwrites=dict(original.overwrites),
            reason=f"Temporary channel for {self.target}",
        )
        logger.info(f"Created temporary channel {self.temp_channel.id} in guild {self.guild.id}")
        self.channel = self.temp_channel
        await self.target.move_to(self.temp_channel, reason="Sound session")

    async def _teardown(self):
        if self.state is SessionState.DESTROYED:
            return
        if self.is_live:
            self.end(EndReason.ERROR, RuntimeError("Session torn down while live"))

        if self._timeout_handle:
            self._timeout_handle.cancel()
            self._timeout_handle = None
        current = asyncio.current_task()
        for task in (self._probe_task, self._move_task):
            if task and task is not current and not task.done():
                task.cancel()
        if self._subscription:
            self._subscription.release()

        # A cancelled connect leaves its client registered on the guild
        vc = self.voice_client or getattr(self.guild, "voice_client", None)
        if vc is not None:
            try:
                if vc.is_playing() or vc.is_paused():
                    vc.stop()
            except Exception as e:
                logger.error(f"Failed to stop playback: {e}")
            try:
                await vc.disconnect(force=True)
            except Exception as e:
                logger.error(f"Failed to disconnect voice client: {e}")

        if self.temp_channel is not None:
            try:
                member = self.guild.get_member(self.target.id)
                if member and member.voice and member.voice.channel and member.voice.channel.id == self.temp_channel.id:
                    await member.move_to(self.original_channel, reason="Sound session finished")
            except Exception as e:
                logger.error(f"Failed to move {self.target} back to {self.original_channel}: {e}")
            try:
                await self.temp_channel.delete(reason="Sound session finished")
                logger.info(f"Deleted temporary channel {self.temp_channel.id}")
            except Exception as e:
                logger.error(f"Failed to delete temporary channel {self.temp_channel.id}: {e}")

        if self.view:
            self.view.stop()

        self._transition(SessionState.DESTROYED)
        self._destroyed.set()

    # ==================== VOICE STATE WATCH ====================

    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ):
        if member.guild.id != self.guild.id or not self.is_live:
            return

        if self.bot.user and member.id == self.bot.user.id:
            if self.state is SessionState.PLAYING and after.channel is None:
                self._start_reconnect_probe()
            return

        if member.id != self.target.id:
            return

        before_id = before.channel.id if before.channel else None
        after_id = after.channel.id if after.channel else None
        if before_id == after_id:
            return

        if self.options.temporary_channel:
            if (
                self.temp_channel
                and before_id == self.temp_channel.id
                and after.channel is not None
            ):
                await self._force_return(member)
        elif self.options.follow and after.channel is not None:
            if self.state is SessionState.PLAYING and after_id != self.channel.id:
                self._move_task = asyncio.create_task(self._follow(after.channel))
                await self._move_task

    async def _force_return(self, member: discord.Member):
        logger.info(f"Moving {member} back into temporary channel {self.temp_channel.id}")
        try:
            await member.move_to(self.temp_channel, reason="Sound session in progress")
        except Exception as e:
            logger.error(f"Failed to move {member} back: {e}")
            self.end(EndReason.ERROR, e)

    async def _follow(self, channel: discord.VoiceChannel):
        logger.info(f"Following {self.target} to {channel.name}")
        try:
            await self.voice_client.move_to(channel)
        except Exception as e:
            self.end(EndReason.ERROR, e)
            return
        if not self.is_live:
            return
        self.channel = channel
        await self._edit_status(self._playing_text(), view=self.view)

    def _start_reconnect_probe(self):
        if self._probe_task and not self._probe_task.done():
            return
        self._probe_task = asyncio.create_task(self._reconnect_probe())

    async def _reconnect_probe(self):
        async def reconnected():
            while not self.voice_client.is_connected():
                await asyncio.sleep(0.25)

        try:
            await asyncio.wait_for(reconnected(), timeout=self.options.reconnect_timeout)
            logger.info(f"Voice connection for {self.clip_name!r} recovered")
        except asyncio.TimeoutError:
            self.end(EndReason.DISCONNECTED, RuntimeError("Voice connection lost"))

    # ==================== MESSAGES ====================

    def _playing_text(self) -> str:
        return f'🎵 Playing "{self.clip_name}" for {self.target.display_name} in {self.channel.name}!'

    async def _edit_status(self, content: str, view: discord.ui.View | None = None):
        try:
            await self.interaction.edit_original_response(content=content, view=view)
        except discord.HTTPException as e:
            logger.warning(f"Failed to update session message: {e}")

    async def clear_controls(self):
        """Drop the stop button once it can no longer be used."""
        if self.is_live and self.state is SessionState.PLAYING:
            await self._edit_status(self._playing_text(), view=None)

    def _outcome_text(self) -> str:
        name = self.target.display_name
        moved_back = f" {name} has been moved back to their original channel." if self.temp_channel else ""
        reason = self.end_reason
        if reason is EndReason.FINISHED:
            return f'✅ Finished playing "{self.clip_name}" for {name}.{moved_back}'
        if reason is EndReason.STOPPED:
            return f"⏹️ Stopped!{moved_back}"
        if reason is EndReason.TIMEOUT:
            return f'⏱️ "{self.clip_name}" hit the time limit and was stopped.{moved_back}'
        if reason is EndReason.CONNECT_TIMEOUT:
            return "❌ Failed to join the voice channel!"
        if reason is EndReason.DISCONNECTED:
            return "❌ Lost the voice connection."
        if reason is EndReason.PLAYBACK_ERROR:
            return f'❌ Could not play "{self.clip_name}".'
        detail = f": {self.error}" if self.error else ""
        return f"❌ An error occurred while trying to play the sound{detail}"

    async def _report_outcome(self):
        await self._edit_status(self._outcome_text(), view=None)
