"""Exception taxonomy for the SLAM pipeline.

Per-frame failures (TrackingLost, InitializationFailed, RelocalizationFailed)
are absorbed by the Tracker into its state and never cross the session
boundary. MapInconsistency aborts a single map transaction. ResourceExhaustion
and SessionStateError are surfaced synchronously to the caller.
"""

from __future__ import annotations


class SLAMError(Exception):
    """Base class for all errors raised by covislam."""


class TrackingLost(SLAMError):
    """Pose could not be estimated against the map (recoverable)."""


class InitializationFailed(SLAMError):
    """Bootstrap did not succeed for this frame (retried on the next one)."""


class RelocalizationFailed(SLAMError):
    """No place-recognition candidate yielded a verified pose."""


class MapInconsistency(SLAMError):
    """A mutation would break a map invariant; the partial change is discarded."""


class ResourceExhaustion(SLAMError):
    """A startup resource (vocabulary, settings, persisted map) failed to load."""


class SessionStateError(SLAMError):
    """Operation requested in the wrong session phase (e.g. export before shutdown)."""
