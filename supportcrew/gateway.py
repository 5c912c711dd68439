# SupportCrew – Discord side of the tracker
#
# Converts discord.py objects into lifecycle dataclasses and wraps the few
# REST calls the tracker needs, mapping HTTP failures onto our error types.

import logging
from typing import List, Optional, Sequence

import discord

from supportcrew.errors import ArchivalError, PlatformQueryError
from supportcrew.lifecycle import ForumTag, MemberInfo, MessageInfo, ThreadInfo, ThreadKind, epoch_millis

log = logging.getLogger("supportcrew.gateway")

HISTORY_LIMIT = 500

_KINDS = {
    discord.ChannelType.public_thread: ThreadKind.PUBLIC,
    discord.ChannelType.private_thread: ThreadKind.PRIVATE,
}


def thread_info(thread: discord.Thread) -> ThreadInfo:
    created = thread.created_at or discord.utils.snowflake_time(thread.id)
    return ThreadInfo(
        id=thread.id,
        guild_id=getattr(thread.guild, "id", 0),
        parent_id=thread.parent_id or 0,
        created_ms=epoch_millis(created),
        owner_id=thread.owner_id or 0,
        title=thread.name or "",
        applied_tags=tuple(t.id for t in (thread.applied_tags or [])),
        archived=bool(getattr(thread, "archived", False)),
        locked=bool(getattr(thread, "locked", False)),
        kind=_KINDS.get(thread.type, ThreadKind.OTHER),
        in_forum=isinstance(thread.parent, discord.ForumChannel),
    )


def message_info(message: discord.Message) -> MessageInfo:
    # raw_mentions keeps the order users were typed in; .mentions does not
    by_id = {u.id: u for u in (message.mentions or [])}
    ordered = []
    for uid in dict.fromkeys(message.raw_mentions or []):
        user = by_id.get(uid)
        if user is not None and not user.bot:
            ordered.append(user)
    return MessageInfo(
        id=message.id,
        thread_id=message.channel.id,
        author_id=message.author.id,
        author_name=message.author.name,
        created_ms=epoch_millis(message.created_at),
        content=message.content or "",
        author_is_bot=bool(message.author.bot),
        mention_ids=tuple(u.id for u in ordered),
        mention_names=tuple(u.name for u in ordered),
    )


def member_info(member: discord.Member) -> MemberInfo:
    return MemberInfo(
        id=member.id,
        name=member.name,
        role_ids=frozenset(r.id for r in getattr(member, "roles", []) or []),
        bot=bool(member.bot),
    )


class DiscordGateway:
    def __init__(self, client: discord.Client, history_limit: int = HISTORY_LIMIT):
        self.client = client
        self.history_limit = history_limit

    async def _channel(self, channel_id: int):
        ch = self.client.get_channel(channel_id)
        if ch is not None:
            return ch
        try:
            return await self.client.fetch_channel(channel_id)
        except discord.HTTPException as e:
            raise PlatformQueryError(f"cannot fetch channel {channel_id}: {e}") from e

    async def _thread(self, thread_id: int) -> discord.Thread:
        ch = await self._channel(thread_id)
        if not isinstance(ch, discord.Thread):
            raise PlatformQueryError(f"channel {thread_id} is not a thread")
        return ch

    async def fetch_messages_after(self, thread_id: int, after_id: int) -> List[MessageInfo]:
        thread = await self._thread(thread_id)
        try:
            return [
                message_info(m)
                async for m in thread.history(limit=self.history_limit, after=discord.Object(id=after_id), oldest_first=True)
            ]
        except discord.HTTPException as e:
            raise PlatformQueryError(f"cannot read history of {thread_id}: {e}") from e

    async def fetch_member(self, guild_id: int, user_id: int) -> Optional[MemberInfo]:
        guild = self.client.get_guild(guild_id)
        if guild is None:
            raise PlatformQueryError(f"guild {guild_id} not in cache")
        member = guild.get_member(user_id)
        if member is None:
            try:
                member = await guild.fetch_member(user_id)
            except discord.NotFound:
                return None  # left the server
            except discord.HTTPException as e:
                raise PlatformQueryError(f"cannot fetch member {user_id}: {e}") from e
        return member_info(member)

    async def fetch_user_name(self, user_id: int) -> str:
        user = self.client.get_user(user_id)
        if user is None:
            try:
                user = await self.client.fetch_user(user_id)
            except discord.HTTPException as e:
                raise PlatformQueryError(f"cannot fetch user {user_id}: {e}") from e
        return user.name

    async def available_tags(self, forum_id: int) -> List[ForumTag]:
        forum = await self._channel(forum_id)
        if not isinstance(forum, discord.ForumChannel):
            raise PlatformQueryError(f"channel {forum_id} is not a forum")
        return [ForumTag(id=t.id, name=t.name) for t in forum.available_tags]

    async def archive_thread(self, thread_id: int, tags: Sequence[int], archived: bool = True) -> None:
        try:
            thread = await self._thread(thread_id)
        except PlatformQueryError as e:
            raise ArchivalError(str(e)) from e
        forum = thread.parent
        applied = []
        for tag_id in tags:
            tag = forum.get_tag(tag_id) if isinstance(forum, discord.ForumChannel) else None
            applied.append(tag or discord.Object(id=tag_id))
        try:
            await thread.edit(applied_tags=applied, archived=archived)
        except discord.HTTPException as e:
            raise ArchivalError(f"cannot archive post {thread_id}: {e}") from e
        log.info("Archived post %s with tags %s", thread_id, list(tags))

    async def delete_message(self, thread_id: int, message_id: int) -> None:
        thread = await self._thread(thread_id)
        try:
            await thread.get_partial_message(message_id).delete()
        except discord.NotFound:
            return
        except discord.HTTPException as e:
            raise PlatformQueryError(f"cannot delete message {message_id}: {e}") from e

    async def fetch_thread(self, thread_id: int) -> ThreadInfo:
        # REST read; the cached thread can lag behind an archive/unarchive
        try:
            ch = await self.client.fetch_channel(thread_id)
        except discord.HTTPException as e:
            raise PlatformQueryError(f"cannot fetch post {thread_id}: {e}") from e
        if not isinstance(ch, discord.Thread):
            raise PlatformQueryError(f"channel {thread_id} is not a thread")
        return thread_info(ch)
