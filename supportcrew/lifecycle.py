# SupportCrew – thread lifecycle core
#
# Pure logic: no discord, no gspread. Everything here works on the small
# dataclasses below; gateway.py converts discord.py objects into them and
# tracker.py drives the event flow.

import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone as _tz
from enum import Enum
from typing import ClassVar, Dict, FrozenSet, Iterable, List, Optional, Protocol, Sequence, Tuple

from supportcrew.errors import ConfigurationError, InvalidTimestamp, TagNotFound

EPOCH = datetime(1970, 1, 1, tzinfo=_tz.utc)
MAX_APPLIED_TAGS = 5  # Discord limit per forum post


# ---------- Platform shapes ----------
class ThreadKind(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    OTHER = "other"


@dataclass(frozen=True)
class ForumTag:
    id: int
    name: str


@dataclass(frozen=True)
class ThreadInfo:
    id: int
    guild_id: int
    parent_id: int
    created_ms: int
    owner_id: int
    title: str
    applied_tags: Tuple[int, ...] = ()
    archived: bool = False
    locked: bool = False
    kind: ThreadKind = ThreadKind.PUBLIC
    in_forum: bool = True

    @property
    def is_open_public(self) -> bool:
        return self.kind is ThreadKind.PUBLIC and not self.archived and not self.locked


@dataclass(frozen=True)
class MessageInfo:
    id: int
    thread_id: int
    author_id: int
    author_name: str
    created_ms: int
    content: str = ""
    author_is_bot: bool = False
    mention_ids: Tuple[int, ...] = ()
    mention_names: Tuple[str, ...] = ()


@dataclass(frozen=True)
class MemberInfo:
    id: int
    name: str
    role_ids: FrozenSet[int] = frozenset()
    bot: bool = False


def is_staff(member: Optional[MemberInfo], roster: FrozenSet[int]) -> bool:
    if member is None or member.bot:
        return False
    return bool(member.role_ids & roster)


# ---------- Time ----------
def epoch_millis(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=_tz.utc)
    return (dt - EPOCH) // timedelta(milliseconds=1)


def format_time(epoch_ms, offset_minutes: int = 0) -> str:
    """Epoch millis -> 'M/DD/YYYY HH:mm:ss' at a fixed UTC offset."""
    if isinstance(epoch_ms, bool) or not isinstance(epoch_ms, (int, float)):
        raise InvalidTimestamp(f"not an epoch timestamp: {epoch_ms!r}")
    if isinstance(epoch_ms, float):
        if not math.isfinite(epoch_ms) or not epoch_ms.is_integer():
            raise InvalidTimestamp(f"not an integral epoch timestamp: {epoch_ms!r}")
        epoch_ms = int(epoch_ms)
    try:
        d = (EPOCH + timedelta(milliseconds=epoch_ms)).astimezone(_tz(timedelta(minutes=offset_minutes)))
    except (OverflowError, ValueError) as e:
        raise InvalidTimestamp(f"timestamp out of range: {epoch_ms!r}") from e
    return f"{d.month}/{d.day:02d}/{d.year:04d} {d.hour:02d}:{d.minute:02d}:{d.second:02d}"


_OFFSET_COLON_RX = re.compile(r"^([+-])?(\d{1,2}):(\d{2})$")
_OFFSET_COMPACT_RX = re.compile(r"^([+-])(\d{2})(\d{2})$")


def parse_utc_offset(value) -> int:
    """
    Offset in minutes from an int, a numeric string, '+HH:MM' or '+HHMM'.
    Numbers with magnitude under 16 are hours (so 8 and 480 both mean UTC+8).
    """
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ConfigurationError(f"utc_offset must be a number or ±HH:MM, got {value!r}")
    if isinstance(value, (int, float)):
        minutes = value
    else:
        s = str(value).strip()
        if not s:
            return 0
        m = _OFFSET_COLON_RX.match(s) or _OFFSET_COMPACT_RX.match(s)
        if m:
            sign = -1 if m.group(1) == "-" else 1
            minutes = sign * (int(m.group(2)) * 60 + int(m.group(3)))
            return _check_offset(minutes, value)
        try:
            minutes = float(s)
        except ValueError:
            raise ConfigurationError(f"utc_offset must be a number or ±HH:MM, got {value!r}") from None
    if not math.isfinite(minutes):
        raise ConfigurationError(f"utc_offset must be finite, got {value!r}")
    if abs(minutes) < 16:
        minutes = minutes * 60
    return _check_offset(int(round(minutes)), value)


def _check_offset(minutes: int, raw) -> int:
    if abs(minutes) >= 24 * 60:
        raise ConfigurationError(f"utc_offset out of range: {raw!r}")
    return minutes


# ---------- Tags ----------
def find_tag_id(available: Iterable[ForumTag], name: str, forum_id: int = 0) -> int:
    for tag in available:
        if tag.name == name:
            return tag.id
    raise TagNotFound(name, forum_id)


def consolidate_tags(resolved_id: int, current: Iterable[int], limit: Optional[int] = None) -> List[int]:
    """Resolved tag first, then the post's own tags; no repeats, first-seen order."""
    tags = list(dict.fromkeys([resolved_id, *current]))
    if limit is not None and limit > 0:
        tags = tags[:limit]
    return tags


def tag_names(available: Sequence[ForumTag], applied: Iterable[int]) -> List[str]:
    applied_set = set(applied)
    return [t.name for t in available if t.id in applied_set]


# ---------- First response ----------
def detect_first_response(thread: ThreadInfo, messages: Iterable[MessageInfo],
                          staff_ids: Iterable[int]) -> Optional[MessageInfo]:
    """
    Earliest message after the opening post written by a non-bot staff author.
    Ties on timestamp go to the lower (older) snowflake id.
    """
    staff = set(staff_ids)
    candidates = [
        m for m in messages
        if m.id > thread.id and not m.author_is_bot and m.author_id in staff
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda m: (m.created_ms, m.id))


# ---------- Close command ----------
@dataclass(frozen=True)
class CloseCommand:
    resolver_id: Optional[int] = None
    resolver_name: Optional[str] = None


def parse_close_command(message: MessageInfo, prefix: str) -> Optional[CloseCommand]:
    text = (message.content or "").strip()
    if not prefix or not text.startswith(prefix):
        return None
    words = text[len(prefix):].split()
    if not words or words[0].lower() != "close":
        return None
    if message.mention_ids:
        return CloseCommand(resolver_id=message.mention_ids[0], resolver_name=message.mention_names[0])
    return CloseCommand()


class RejectReason(str, Enum):
    NOT_STAFF = "not_staff"
    NOT_OPEN_PUBLIC_THREAD = "not_open_public_thread"
    TAG_NOT_FOUND = "tag_not_found"


# ---------- Records ----------
class _Record:
    SHEET_KIND: ClassVar[str] = ""
    HEADERS: ClassVar[Tuple[str, ...]] = ()

    def as_row(self) -> Dict[str, str]:
        return {h: getattr(self, h) for h in self.HEADERS}


@dataclass(frozen=True)
class CreationRecord(_Record):
    SHEET_KIND: ClassVar[str] = "init"
    HEADERS: ClassVar[Tuple[str, ...]] = (
        "post_id", "post_link", "question", "posted_by", "posted", "tags",
        "responder", "first_response", "resolution_time", "resolved_by",
    )

    post_id: str
    post_link: str
    question: str
    posted_by: str
    posted: str
    tags: str
    responder: str
    first_response: str
    resolution_time: str
    resolved_by: str


# Column order matters: the creation-sheet formulas read B and C of these tabs.
@dataclass(frozen=True)
class FirstResponseRecord(_Record):
    SHEET_KIND: ClassVar[str] = "response"
    HEADERS: ClassVar[Tuple[str, ...]] = ("post_id", "first_response", "responder")

    post_id: str
    first_response: str
    responder: str


@dataclass(frozen=True)
class ResolutionRecord(_Record):
    SHEET_KIND: ClassVar[str] = "resolve"
    HEADERS: ClassVar[Tuple[str, ...]] = ("post_id", "resolution_time", "resolved_by")

    post_id: str
    resolution_time: str
    resolved_by: str


@dataclass(frozen=True)
class Accepted:
    record: ResolutionRecord


@dataclass(frozen=True)
class Rejected:
    reason: RejectReason
    detail: str = ""


def thread_link(guild_id: int, thread_id: int) -> str:
    return f"https://discord.com/channels/{guild_id}/{thread_id}"


def reference_formulas(response_sheet: str, resolve_sheet: str) -> Dict[str, str]:
    """
    Lookups the spreadsheet evaluates on the creation tab, keyed by column A
    (post_id). The response/resolve tabs must keep post_id in A, the time in B
    and the person in C.
    """
    return {
        "first_response": f"=IFERROR(VLOOKUP(A2:A,{response_sheet}!A2:B,2,0))",
        "resolution_time": f"=IFERROR(VLOOKUP(A2:A,{resolve_sheet}!A2:B,2,0))",
        "responder": f"=IFERROR(VLOOKUP(A2:A,{{{response_sheet}!A2:A,{response_sheet}!C2:C}},2,0))",
        "resolved_by": f"=IFERROR(VLOOKUP(A2:A,{{{resolve_sheet}!A2:A,{resolve_sheet}!C2:C}},2,0))",
    }


def build_creation_record(thread: ThreadInfo, owner_name: str, available: Sequence[ForumTag], *,
                          response_sheet: str, resolve_sheet: str, offset_minutes: int = 0) -> CreationRecord:
    refs = reference_formulas(response_sheet, resolve_sheet)
    return CreationRecord(
        post_id=str(thread.id),
        post_link=thread_link(thread.guild_id, thread.id),
        question=thread.title,
        posted_by=owner_name,
        posted=format_time(thread.created_ms, offset_minutes),
        tags=", ".join(tag_names(available, thread.applied_tags)),
        responder=refs["responder"],
        first_response=refs["first_response"],
        resolution_time=refs["resolution_time"],
        resolved_by=refs["resolved_by"],
    )


def build_first_response_record(thread: ThreadInfo, message: MessageInfo,
                                offset_minutes: int = 0) -> FirstResponseRecord:
    return FirstResponseRecord(
        post_id=str(thread.id),
        first_response=format_time(message.created_ms, offset_minutes),
        responder=message.author_name,
    )


def build_resolution_record(thread: ThreadInfo, resolved_at_ms: int, resolved_by: str,
                            offset_minutes: int = 0) -> ResolutionRecord:
    return ResolutionRecord(
        post_id=str(thread.id),
        resolution_time=format_time(resolved_at_ms, offset_minutes),
        resolved_by=resolved_by,
    )


# ---------- Collaborator interfaces ----------
class PlatformGateway(Protocol):
    async def fetch_messages_after(self, thread_id: int, after_id: int) -> List[MessageInfo]: ...
    async def fetch_member(self, guild_id: int, user_id: int) -> Optional[MemberInfo]: ...
    async def fetch_user_name(self, user_id: int) -> str: ...
    async def available_tags(self, forum_id: int) -> List[ForumTag]: ...
    async def archive_thread(self, thread_id: int, tags: Sequence[int], archived: bool = True) -> None: ...
    async def delete_message(self, thread_id: int, message_id: int) -> None: ...
    async def fetch_thread(self, thread_id: int) -> ThreadInfo: ...


class RecordSink(Protocol):
    async def append_row(self, sheet_name: str, record: _Record) -> None: ...
