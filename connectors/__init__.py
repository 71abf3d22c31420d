from .base import SyncSource
from .asana import AsanaSource
from .github import GitHubSource
from .calendar import GoogleCalendarSource

SOURCES = {
    AsanaSource.name: AsanaSource,
    GitHubSource.name: GitHubSource,
    GoogleCalendarSource.name: GoogleCalendarSource,
}

__all__ = [
    "SyncSource",
    "AsanaSource",
    "GitHubSource",
    "GoogleCalendarSource",
    "SOURCES",
]
