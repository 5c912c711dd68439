# SupportCrew – lifecycle tracker
#
# Turns thread/message events into sheet rows. One lock per thread serialises
# the first-response check-then-append and close handling; discord.py runs
# every event as its own task, so two staff replies can otherwise interleave.

import asyncio
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import Dict, List, Optional, Set, Union

from supportcrew.errors import PlatformQueryError, SinkWriteError, TagNotFound
from supportcrew.lifecycle import (
    MAX_APPLIED_TAGS,
    Accepted,
    CloseCommand,
    CreationRecord,
    FirstResponseRecord,
    MemberInfo,
    MessageInfo,
    PlatformGateway,
    RecordSink,
    Rejected,
    RejectReason,
    ThreadInfo,
    build_creation_record,
    build_first_response_record,
    build_resolution_record,
    consolidate_tags,
    detect_first_response,
    find_tag_id,
    is_staff,
    parse_close_command,
)

log = logging.getLogger("supportcrew.tracker")

_MEMORY_SIZE = 5000


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class _Recent:
    """Bounded set of thread ids (oldest forgotten first)."""

    def __init__(self, maxlen: int = _MEMORY_SIZE):
        self._items: "OrderedDict[int, None]" = OrderedDict()
        self.maxlen = maxlen

    def add(self, key: int):
        self._items[key] = None
        self._items.move_to_end(key)
        while len(self._items) > self.maxlen:
            self._items.popitem(last=False)

    def discard(self, key: int):
        self._items.pop(key, None)

    def __contains__(self, key) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)


class LifecycleTracker:
    def __init__(self, gateway: PlatformGateway, sink: RecordSink, settings):
        self.gateway = gateway
        self.sink = sink
        self.settings = settings
        self._locks: Dict[int, _LockEntry] = {}
        self._responded = _Recent()
        self._closed = _Recent()

    @property
    def roster(self):
        return self.settings.staff_role_ids

    def watches(self, thread: ThreadInfo) -> bool:
        return thread.in_forum and self.settings.watches(thread.parent_id)

    @asynccontextmanager
    async def thread_lock(self, thread_id: int):
        entry = self._locks.get(thread_id)
        if entry is None:
            entry = self._locks[thread_id] = _LockEntry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(thread_id, None)

    async def _emit(self, record) -> bool:
        sheet = self.settings.sheet_for(record.SHEET_KIND)
        try:
            await self.sink.append_row(sheet, record)
        except SinkWriteError as e:
            # already dead-lettered by the sink
            log.error("Lost %s row for post %s from live sheet: %s", record.SHEET_KIND, record.post_id, e)
            return False
        log.info("Logged %s for post %s → %s", record.SHEET_KIND, record.post_id, sheet)
        return True

    # ---------- thread created ----------
    async def on_thread_created(self, thread: ThreadInfo) -> Optional[CreationRecord]:
        if not self.watches(thread):
            return None
        tags = await self.gateway.available_tags(thread.parent_id)
        owner = await self.gateway.fetch_user_name(thread.owner_id)
        record = build_creation_record(
            thread, owner, tags,
            response_sheet=self.settings.datasheet_response,
            resolve_sheet=self.settings.datasheet_resolve,
            offset_minutes=self.settings.utc_offset,
        )
        await self._emit(record)
        return record

    # ---------- message created ----------
    async def on_message(self, message: MessageInfo, thread: ThreadInfo
                         ) -> Union[Accepted, Rejected, FirstResponseRecord, None]:
        """
        Close commands return Accepted/Rejected; anything else returns the
        FirstResponseRecord it logged, or None.
        """
        if message.author_is_bot or not self.watches(thread):
            return None
        command = parse_close_command(message, self.settings.command_prefix)
        if command is not None:
            member = await self.gateway.fetch_member(thread.guild_id, message.author_id)
            return await self.handle_close(command, message, thread, member)
        return await self.check_first_response(message, thread)

    async def _staff_authors(self, thread: ThreadInfo, history: List[MessageInfo], known: Dict[int, bool]) -> Set[int]:
        """Walk oldest → newest resolving roles, stopping at the first staff author."""
        staff: Set[int] = {uid for uid, ok in known.items() if ok}
        for m in sorted(history, key=lambda m: (m.created_ms, m.id)):
            if m.id <= thread.id or m.author_is_bot:
                continue
            if m.author_id not in known:
                member = await self.gateway.fetch_member(thread.guild_id, m.author_id)
                known[m.author_id] = is_staff(member, self.roster)
                if known[m.author_id]:
                    staff.add(m.author_id)
            if known[m.author_id]:
                break
        return staff

    async def check_first_response(self, message: MessageInfo, thread: ThreadInfo) -> Optional[FirstResponseRecord]:
        if message.id == thread.id or not thread.is_open_public:
            return None
        async with self.thread_lock(thread.id):
            if thread.id in self._responded:
                return None
            author = await self.gateway.fetch_member(thread.guild_id, message.author_id)
            if not is_staff(author, self.roster):
                return None
            history = await self.gateway.fetch_messages_after(thread.id, thread.id)
            # a close command left behind (e.g. rejected) is never a response
            prefix = self.settings.command_prefix
            history = [m for m in history if parse_close_command(m, prefix) is None]
            if not any(m.id == message.id for m in history):
                history = [*history, message]
            staff = await self._staff_authors(thread, history, {message.author_id: True})
            first = detect_first_response(thread, history, staff)
            if first is None or first.id != message.id:
                log.debug("Post %s: message %s is not the first staff reply", thread.id, message.id)
                return None
            record = build_first_response_record(thread, first, self.settings.utc_offset)
            self._responded.add(thread.id)
            await self._emit(record)
            return record

    # ---------- close ----------
    async def handle_close(self, command: CloseCommand, message: MessageInfo, thread: ThreadInfo,
                           member: Optional[MemberInfo]) -> Union[Accepted, Rejected]:
        """
        Archive the post with the resolution tag and log who resolved it.
        Rejections leave the thread untouched; ArchivalError propagates.
        """
        async with self.thread_lock(thread.id):
            if thread.id in self._closed:
                # members can reopen an archived post by posting in it
                current = await self.gateway.fetch_thread(thread.id)
                if not current.is_open_public:
                    return self._reject(thread, RejectReason.NOT_OPEN_PUBLIC_THREAD, "post is already closed")
                self._closed.discard(thread.id)
                thread = current
            if not thread.is_open_public:
                return self._reject(thread, RejectReason.NOT_OPEN_PUBLIC_THREAD, "post is not an open public thread")
            if not is_staff(member, self.roster):
                return self._reject(thread, RejectReason.NOT_STAFF, f"user {message.author_id} has no support role")
            try:
                catalog = await self.gateway.available_tags(thread.parent_id)
                resolved_tag = find_tag_id(catalog, self.settings.resolution_tag_name, thread.parent_id)
            except TagNotFound as e:
                log.error("Close on post %s refused: %s (check resolution_tag_name)", thread.id, e)
                return Rejected(RejectReason.TAG_NOT_FOUND, str(e))

            try:
                await self.gateway.delete_message(thread.id, message.id)
            except PlatformQueryError as e:
                log.warning("Could not delete close command %s in post %s: %s", message.id, thread.id, e)

            tags = consolidate_tags(resolved_tag, thread.applied_tags, limit=MAX_APPLIED_TAGS)
            await self.gateway.archive_thread(thread.id, tags, archived=True)
            self._closed.add(thread.id)

            resolved_by = command.resolver_name or member.name
            record = build_resolution_record(thread, message.created_ms, resolved_by, self.settings.utc_offset)
            await self._emit(record)
            return Accepted(record)

    @staticmethod
    def _reject(thread: ThreadInfo, reason: RejectReason, detail: str) -> Rejected:
        log.info("Close on post %s rejected: %s", thread.id, detail)
        return Rejected(reason, detail)
