"""Sonos multiroom zone controller.

Keeps one virtual on/off switch per Sonos zone in sync with the speakers'
group playback state and exposes zone properties over an HTTP API.
"""

__version__ = "0.1.0"
