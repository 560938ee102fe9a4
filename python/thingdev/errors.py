"""Exception hierarchy for thingdev."""

from __future__ import annotations


class ThingDevError(RuntimeError):
    """Base class for errors raised by thingdev."""


class ConfigError(ThingDevError):
    """Raised when the configuration file cannot be read or parsed."""


class ManifestError(ThingDevError):
    """Raised when the application manifest is missing or malformed."""


class SpawnError(ThingDevError):
    """Raised when the application process cannot be launched."""


class FrameError(ThingDevError):
    """Raised when a wire frame cannot be decoded."""
