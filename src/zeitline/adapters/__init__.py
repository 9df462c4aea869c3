"""Provider adapters normalizing each event source into canonical events."""

from zeitline.adapters.base import (
    BearerProviderAdapter,
    CalendarRef,
    HttpProviderAdapter,
    ProviderAdapter,
    static_token,
)
from zeitline.adapters.caldav import CalDAVCalendarAdapter
from zeitline.adapters.google import GoogleCalendarAdapter
from zeitline.adapters.native import NativeAdapter
from zeitline.adapters.outlook import OutlookCalendarAdapter

__all__ = [
    "BearerProviderAdapter",
    "CalDAVCalendarAdapter",
    "CalendarRef",
    "GoogleCalendarAdapter",
    "HttpProviderAdapter",
    "NativeAdapter",
    "OutlookCalendarAdapter",
    "ProviderAdapter",
    "static_token",
]
