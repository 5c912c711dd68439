# SupportCrew – error taxonomy

class SupportCrewError(Exception):
    """Base for everything the tracker raises on purpose."""


class ConfigurationError(SupportCrewError):
    """Missing or malformed settings/credentials. Fatal at boot."""


class TagNotFound(ConfigurationError):
    """The forum has no tag with the configured resolution name."""

    def __init__(self, tag_name: str, forum_id: int = 0):
        self.tag_name = tag_name
        self.forum_id = forum_id
        where = f" in forum {forum_id}" if forum_id else ""
        super().__init__(f"no forum tag named '{tag_name}'{where}")


class InvalidTimestamp(SupportCrewError, ValueError):
    pass


class PlatformQueryError(SupportCrewError):
    """A Discord fetch (member, user, history, channel) failed."""


class ArchivalError(SupportCrewError):
    """Editing the thread (tags + archived) failed; the thread stays open."""


class SinkWriteError(SupportCrewError):
    """A row could not be appended to the spreadsheet."""

    def __init__(self, sheet_name: str, message: str, attempts: int = 0):
        self.sheet_name = sheet_name
        self.attempts = attempts
        super().__init__(f"[{sheet_name}] {message}")
