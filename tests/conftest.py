"""Shared fakes for the tracker tests.

The project root goes on sys.path so the tests also run without an editable
install.
"""

import asyncio
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from supportcrew.config import Settings  # noqa: E402
from supportcrew.errors import ArchivalError, PlatformQueryError, SinkWriteError  # noqa: E402
from supportcrew.lifecycle import ForumTag, MemberInfo, MessageInfo, ThreadInfo  # noqa: E402

GUILD_ID = 900
FORUM_ID = 500
STAFF_ROLE = 77
THREAD_ID = 1000
T0 = 1_700_000_000_000  # 2023-11-14 22:13:20 UTC

RESOLVED_TAG = ForumTag(id=11, name="Resolved")
BUG_TAG = ForumTag(id=12, name="Bug")
BILLING_TAG = ForumTag(id=13, name="Billing")


def make_settings(**overrides) -> Settings:
    base = dict(
        discord_token="x" * 40,
        staff_role_ids=frozenset({STAFF_ROLE}),
        spreadsheet_id="sheet-id",
        google_credentials={"client_email": "bot@example.iam.gserviceaccount.com"},
        utc_offset=-300,
    )
    base.update(overrides)
    return Settings(**base)


def make_thread(**overrides) -> ThreadInfo:
    base = dict(
        id=THREAD_ID, guild_id=GUILD_ID, parent_id=FORUM_ID, created_ms=T0,
        owner_id=1, title="App crashes on login", applied_tags=(BUG_TAG.id,),
    )
    base.update(overrides)
    return ThreadInfo(**base)


def make_message(id: int, author_id: int, created_ms: int, content: str = "hello", **overrides) -> MessageInfo:
    base = dict(
        id=id, thread_id=THREAD_ID, author_id=author_id, author_name=f"user{author_id}",
        created_ms=created_ms, content=content,
    )
    base.update(overrides)
    return MessageInfo(**base)


class FakeGateway:
    def __init__(self):
        self.members: Dict[int, MemberInfo] = {}
        self.history: List[MessageInfo] = []
        self.tags: List[ForumTag] = [RESOLVED_TAG, BUG_TAG, BILLING_TAG]
        self.user_names: Dict[int, str] = {1: "asker"}
        self.archived: List[tuple] = []
        self.deleted: List[int] = []
        self.member_fetches: List[int] = []
        self.fail_archive = False
        self.fail_delete = False
        self.reopened: set = set()

    def add_member(self, user_id: int, staff: bool = False, bot: bool = False):
        roles = frozenset({STAFF_ROLE}) if staff else frozenset({1})
        self.members[user_id] = MemberInfo(id=user_id, name=f"user{user_id}", role_ids=roles, bot=bot)

    async def fetch_messages_after(self, thread_id, after_id):
        await asyncio.sleep(0)
        return [m for m in self.history if m.thread_id == thread_id and m.id > after_id]

    async def fetch_member(self, guild_id, user_id) -> Optional[MemberInfo]:
        await asyncio.sleep(0)
        self.member_fetches.append(user_id)
        return self.members.get(user_id)

    async def fetch_user_name(self, user_id):
        await asyncio.sleep(0)
        if user_id not in self.user_names:
            raise PlatformQueryError(f"unknown user {user_id}")
        return self.user_names[user_id]

    async def available_tags(self, forum_id):
        return list(self.tags)

    async def archive_thread(self, thread_id, tags, archived=True):
        await asyncio.sleep(0)
        if self.fail_archive:
            raise ArchivalError("503 Service Unavailable")
        self.archived.append((thread_id, list(tags), archived))

    async def delete_message(self, thread_id, message_id):
        if self.fail_delete:
            raise PlatformQueryError("403 Missing Permissions")
        self.deleted.append(message_id)

    async def fetch_thread(self, thread_id):
        await asyncio.sleep(0)
        closed = any(t == thread_id and archived for t, _, archived in self.archived)
        return make_thread(id=thread_id, archived=closed and thread_id not in self.reopened)


class FakeSink:
    def __init__(self):
        self.rows: List[tuple] = []
        self.fail = False

    async def append_row(self, sheet_name, record):
        await asyncio.sleep(0)
        if self.fail:
            raise SinkWriteError(sheet_name, "quota exceeded", attempts=5)
        self.rows.append((sheet_name, record))

    def kinds(self) -> List[str]:
        return [r.SHEET_KIND for _, r in self.rows]


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def sink():
    return FakeSink()


@pytest.fixture
def tracker(gateway, sink, settings):
    from supportcrew.tracker import LifecycleTracker

    return LifecycleTracker(gateway, sink, settings)
