from typing import TYPE_CHECKING

from twitchio.ext import commands

from core.events import OperatorCommand
from core.guards import is_owner

if TYPE_CHECKING:
    from core.bot import Bot
else:
    from twitchio.ext.commands import Bot


class NotOwnerError(commands.GuardFailure):
    """Custom exception for owner-only command guard."""

    ...


class OwnerCmds(commands.Component):
    """Broadcaster-only stream controls.

    Every command is queued on the dispatcher as an ``OperatorCommand`` so it
    runs in order with chat and redemptions.

    Usage:
        !preset <name>          Apply a stream preset
        !skip                   Skip the current track
        !module <name> on|off   Enable or disable a capability
        !llm on|off             Toggle the chat decision loop
        !reload                 Reload chat rules from the store
    """

    def __init__(self, bot: commands.Bot) -> None:
        self.bot: Bot = bot  # type: ignore[assignment]

    async def component_command_error(self, payload: commands.CommandErrorPayload) -> bool | None:
        """Handle component-specific errors."""
        error = payload.exception
        if isinstance(error, NotOwnerError):
            return False
        return None

    @commands.Component.guard()
    def owner_only(self, ctx: commands.Context[Bot]) -> bool:
        """Restrict all commands in this component to the broadcaster."""
        if not is_owner(ctx.chatter, self.bot.broadcaster_id):
            raise NotOwnerError
        return True

    async def _queue(self, name: str, *args: str) -> None:
        await self.bot.dispatcher.submit(OperatorCommand(name, tuple(args)))

    @commands.command()
    async def preset(self, ctx: commands.Context[Bot], name: str | None = None) -> None:
        """Usage: !preset <name>"""
        presets = self.bot.dispatcher.presets
        if not name:
            available = ", ".join(presets.presets) if presets else ""
            await ctx.reply(f"Usage: !preset <name> ({available})")
            return
        if presets is None or name.lower() not in presets.presets:
            await ctx.reply(f"Unknown preset: {name}")
            return
        await self._queue("preset", name.lower())

    @commands.command()
    async def skip(self, ctx: commands.Context[Bot]) -> None:
        """Usage: !skip"""
        await self._queue("skip")

    @commands.command()
    async def module(
        self, ctx: commands.Context[Bot], name: str | None = None, state: str | None = None
    ) -> None:
        """Usage: !module <name> on|off (no arguments lists capability states)"""
        supervisor = self.bot.dispatcher.supervisor
        if supervisor is None:
            return
        if name is None:
            states = ", ".join(
                f"{n}={'up' if s['up'] else ('on' if s['enabled'] else 'off')}"
                for n, s in supervisor.status().items()
            )
            await ctx.reply(states or "No modules registered.")
            return
        if state not in ("on", "off") or name not in supervisor.names():
            await ctx.reply(f"Usage: !module <{'|'.join(supervisor.names())}> on|off")
            return
        await self._queue("module", name, state)

    @commands.command()
    async def llm(self, ctx: commands.Context[Bot], state: str | None = None) -> None:
        """Usage: !llm on|off"""
        if state not in ("on", "off"):
            enabled = self.bot.dispatcher.llm_loop.enabled
            await ctx.reply(f"LLM chat loop is {'on' if enabled else 'off'}")
            return
        await self._queue("llm", state)

    @commands.command()
    async def reload(self, ctx: commands.Context[Bot]) -> None:
        """Usage: !reload"""
        await self._queue("reload")


async def setup(bot: commands.Bot) -> None:
    """Entry point for the module."""
    await bot.add_component(OwnerCmds(bot))


async def teardown(bot: commands.Bot) -> None:
    """Optional teardown coroutine for cleanup."""
    ...
