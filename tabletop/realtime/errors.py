"""Exception types raised by the session synchronization core."""

from __future__ import annotations


class SyncError(Exception):
    """Base class for synchronization failures."""


class SessionAccessError(SyncError):
    """The session does not exist or the credential cannot read it."""


class TransportError(SyncError):
    """The realtime channel could not be joined or a frame could not be sent."""


class StoreError(SyncError):
    """A request against the durable store failed."""


class InvalidTransition(SyncError):
    """A lifecycle trigger is not allowed in the current status."""
