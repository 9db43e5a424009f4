from __future__ import annotations

from typing import Optional


class SonosError(Exception):
    pass


class DeviceCommandError(SonosError):
    """A speaker rejected a command or could not be reached."""

    def __init__(self, message: str, *, host: Optional[str] = None, action: Optional[str] = None) -> None:
        super().__init__(message)
        self.host = host
        self.action = action


class TopologyUnavailable(SonosError):
    """The playback group of a zone could not be determined.

    `ungrouped` is set when the topology was read but no group lists the zone;
    callers treat that case as a stopped zone.
    """

    def __init__(self, zone_name: str, message: str, *, ungrouped: bool = False) -> None:
        super().__init__(message)
        self.zone_name = zone_name
        self.ungrouped = ungrouped
