# SupportCrew – v1.0
#
# - Logs every new support-forum post to the init sheet
# - Logs the first staff reply per post (one row, even under bursts)
# - "!close [@user]" from staff: resolution tag + archive + resolve row
# - Rejected closes get an explicit reply; failed rows are dead-lettered
# - Keepalive HTTP (/, /ready, /health, /healthz) for the host's probes

import asyncio
import logging
import math
import sys
import time
from typing import Optional

import discord
from aiohttp import web
from discord.ext import commands
from dotenv import load_dotenv

from supportcrew.config import Settings, load_settings
from supportcrew.errors import ArchivalError, ConfigurationError, PlatformQueryError, SupportCrewError
from supportcrew.gateway import DiscordGateway, message_info, thread_info
from supportcrew.lifecycle import Rejected, RejectReason
from supportcrew.sheets import SheetsSink
from supportcrew.tracker import LifecycleTracker

log = logging.getLogger("supportcrew")

REJECT_REPLIES = {
    RejectReason.NOT_STAFF: "Only the support team can close posts.",
    RejectReason.NOT_OPEN_PUBLIC_THREAD: "This post is already closed or isn't a public support post.",
    RejectReason.TAG_NOT_FOUND: "I can't find the **{tag}** tag on this forum, so I didn't close it. Ask an admin to add it.",
}


# ---------- Connection state ----------
class HealthState:
    def __init__(self):
        self.start_ts = time.time()
        self.connected = False
        self.last_event_ts = 0.0

    def mark_event(self):
        self.last_event_ts = time.time()

    def last_event_age_s(self) -> Optional[int]:
        return int(time.time() - self.last_event_ts) if self.last_event_ts else None

    def uptime_str(self) -> str:
        s = int(time.time() - self.start_ts); h, s = divmod(s, 3600); m, s = divmod(s, 60)
        return f"{h:02d}:{m:02d}:{s:02d}"


def _latency_ms(bot: commands.Bot) -> Optional[int]:
    lat = getattr(bot, "latency", None)
    if lat is None or not math.isfinite(lat):
        return None
    return int(lat * 1000)


async def _guard(scope: str, coro):
    """Run one event's work; failures are logged, never raised into discord.py."""
    try:
        return await coro
    except PlatformQueryError as e:
        log.warning("[%s] Discord query failed, event skipped: %s", scope, e)
    except SupportCrewError as e:
        log.error("[%s] %s: %s", scope, type(e).__name__, e)
    except Exception:
        log.exception("[%s] unexpected error", scope)
    return None


async def _safe_reply(message: discord.Message, content: str):
    try:
        await message.reply(content, mention_author=False)
    except discord.HTTPException as e:
        log.warning("Reply in %s failed: %s", getattr(message.channel, "id", "?"), e)


async def relay_thread_message(tracker: LifecycleTracker, settings: Settings, message: discord.Message):
    """Hand a thread message to the tracker and answer close commands it turned down."""
    try:
        result = await tracker.on_message(message_info(message), thread_info(message.channel))
    except ArchivalError as e:
        log.error("Archive failed for post %s, left open: %s", message.channel.id, e)
        await _safe_reply(message, f"I couldn't archive this post. Please try `{settings.command_prefix}close` again in a moment.")
        return None
    if isinstance(result, Rejected):
        await _safe_reply(message, REJECT_REPLIES[result.reason].format(tag=settings.resolution_tag_name))
    return result


# ---------- Bot ----------
def build_bot(settings: Settings, sink: SheetsSink) -> commands.Bot:
    intents = discord.Intents.default()
    intents.message_content = True
    bot = commands.Bot(command_prefix=settings.command_prefix, intents=intents, help_command=None)
    bot.health = HealthState()
    bot.sink = sink
    bot.tracker = LifecycleTracker(DiscordGateway(bot), sink, settings)

    @bot.event
    async def on_connect():
        bot.health.connected = True
        bot.health.mark_event()

    @bot.event
    async def on_resumed():
        bot.health.connected = True
        bot.health.mark_event()

    @bot.event
    async def on_disconnect():
        bot.health.connected = False

    @bot.event
    async def on_ready():
        bot.health.connected = True
        bot.health.mark_event()
        await bot.change_presence(activity=discord.Activity(type=discord.ActivityType.watching, name="for support."))
        log.info("Ready! Logged in as %s", bot.user)

    @bot.event
    async def on_error(event_method, *args, **kwargs):
        log.exception("Discord event %s failed", event_method)

    @bot.event
    async def on_thread_create(thread: discord.Thread):
        bot.health.mark_event()
        info = thread_info(thread)
        if not bot.tracker.watches(info):
            return
        try:
            await thread.join()
        except discord.HTTPException as e:
            log.warning("Could not join post %s: %s", thread.id, e)
        await _guard("thread_create", bot.tracker.on_thread_created(info))

    @bot.event
    async def on_message(message: discord.Message):
        bot.health.mark_event()
        if message.author.bot:
            return

        if settings.enable_cmd_ping and message.content == "ping":
            await _safe_reply(message, f"Pong: {_latency_ms(bot)}ms")

        if settings.enable_mention_reply and bot.user and not message.mention_everyone \
                and any(u.id == bot.user.id for u in message.mentions):
            await _safe_reply(message, settings.mention_message)

        if isinstance(message.channel, discord.Thread):
            await _guard("message", relay_thread_message(bot.tracker, settings, message))

        await bot.process_commands(message)

    @bot.event
    async def on_command_error(ctx, error):
        if isinstance(error, commands.CommandNotFound):
            return  # "!close" and friends land here
        log.warning("Command error in %s: %s", ctx.command, error)
        try:
            await ctx.reply(f"⚠️ Command error: `{type(error).__name__}: {error}`", mention_author=False)
        except discord.HTTPException:
            pass

    @bot.command(name="health")
    async def cmd_health(ctx):
        try:
            info = await sink.status()
            ok = f"🟢 OK ({info['title']})"
        except Exception as e:
            log.warning("Sheets health check failed: %s", e)
            ok = "🔴 FAILED"
        await ctx.reply(
            f"🟢 Bot OK | Latency: {_latency_ms(bot)} ms | Sheets: {ok} | "
            f"Dead letters: {sink.dead_letter_count} | Uptime: {bot.health.uptime_str()}",
            mention_author=False,
        )

    @bot.command(name="sheetstatus")
    async def cmd_sheetstatus(ctx):
        email = sink.service_account_email or "(no service account)"
        try:
            info = await sink.status()
        except Exception as e:
            return await ctx.reply(f"⚠️ Cannot open sheet: `{e}`\nShare with: `{email}`", mention_author=False)
        wanted = [settings.datasheet_init, settings.datasheet_response, settings.datasheet_resolve]
        missing = [t for t in wanted if t not in info["tabs"]]
        note = f"\n• Missing (created on first write): `{'`, `'.join(missing)}`" if missing else ""
        await ctx.reply(
            f"✅ Sheets OK: **{info['title']}**\n• Tabs: `{'`, `'.join(wanted)}`{note}\n• Share with: `{email}`",
            mention_author=False,
        )

    @bot.command(name="deadletters")
    async def cmd_deadletters(ctx):
        if not sink.dead_letters:
            return await ctx.reply("No failed sheet writes since boot. ✅", mention_author=False)
        lines = [f"**{sink.dead_letter_count}** row(s) failed since boot (latest 5, full log: `{sink.dead_letter_path}`):"]
        for item in list(sink.dead_letters)[:5]:
            lines.append(f"• [{item['ts'][:19]}] {item['sheet']} · post {item['row'].get('post_id', '?')} · {item['error'][:120]}")
        await ctx.reply("\n".join(lines), mention_author=False)

    return bot


# ---------- Keepalive ----------
def _health_body(bot: commands.Bot) -> dict:
    return {
        "ok": bot.health.connected,
        "connected": bot.health.connected,
        "uptime": bot.health.uptime_str(),
        "last_event_age_s": bot.health.last_event_age_s(),
        "latency_ms": _latency_ms(bot),
        "dead_letters": bot.sink.dead_letter_count,
    }


def build_web_app(bot: commands.Bot) -> web.Application:
    async def _health_ok_always(_req):
        return web.json_response(_health_body(bot), status=200)

    async def _health_strict(_req):
        return web.json_response(_health_body(bot), status=200 if bot.health.connected else 503)

    app = web.Application()
    app.router.add_get("/", _health_ok_always)
    app.router.add_get("/ready", _health_ok_always)
    app.router.add_get("/health", _health_ok_always)
    app.router.add_get("/healthz", _health_strict)
    return app


async def start_webserver(bot: commands.Bot, port: int) -> web.AppRunner:
    runner = web.AppRunner(build_web_app(bot))
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    print(f"[keepalive] HTTP server on :{port}", flush=True)
    return runner


# ------------------------ start -----------------------
def _setup_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level, logging.DEBUG),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # discord.py's gateway chatter is not useful at DEBUG
    logging.getLogger("discord").setLevel(max(logging.INFO, logging.getLogger().level))


def _print_boot_info(settings: Settings):
    print("=== SupportCrew boot ===", flush=True)
    print(f"Sheets: {settings.datasheet_init} / {settings.datasheet_response} / {settings.datasheet_resolve}", flush=True)
    print(f"Staff roles: {sorted(settings.staff_role_ids)} | forums: {sorted(settings.forum_ids) or 'all'}", flush=True)
    print(f"Prefix={settings.command_prefix!r} resolve-tag={settings.resolution_tag_name!r} utc_offset={settings.utc_offset}m", flush=True)


async def _boot(settings: Settings):
    sink = SheetsSink.from_settings(settings)
    await sink.start()
    bot = build_bot(settings, sink)
    runner = None
    try:
        if settings.enable_web_server:
            runner = await start_webserver(bot, settings.port)
        await bot.start(settings.discord_token)
    finally:
        if not bot.is_closed():
            await bot.close()
        if runner is not None:
            await runner.cleanup()
        await sink.stop()


def main():
    load_dotenv()
    try:
        settings = load_settings()
    except ConfigurationError as e:
        logging.basicConfig(level=logging.INFO)
        log.critical("Configuration error: %s", e)
        sys.exit(1)
    _setup_logging(settings.log_level)
    _print_boot_info(settings)
    try:
        asyncio.run(_boot(settings))
    except ConfigurationError as e:
        log.critical("Configuration error: %s", e)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
