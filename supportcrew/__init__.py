"""SupportCrew: forum support-thread lifecycle tracking for Discord + Google Sheets."""

__version__ = "1.0.0"
