"""
Error Taxonomy
==============

Exceptions raised across the depth engine.

Only ValidationError is meant to reach an outside caller. Stream and
remote-model errors are absorbed by retry or fallback at the component
that owns them.
"""


class DepthflowError(Exception):
    """Base class for all depthflow errors."""


class ConfigError(DepthflowError):
    """Configuration file or value is invalid."""


class StreamConnectionError(DepthflowError):
    """Transport or socket failure on the market-data connection."""


class SequenceGapError(DepthflowError):
    """
    Depth diff broke the update-id chain.

    Attributes:
        expected: update id the next diff had to start at
        first_update_id: U of the offending diff
        final_update_id: u of the offending diff
    """

    def __init__(self, message: str, expected: int = 0,
                 first_update_id: int = 0, final_update_id: int = 0):
        super().__init__(message)
        self.expected = expected
        self.first_update_id = first_update_id
        self.final_update_id = final_update_id


class SnapshotOutOfSyncError(SequenceGapError):
    """First diff after a snapshot does not bracket lastUpdateId + 1."""


class ValidationError(DepthflowError):
    """Caller supplied a malformed prediction request."""


class RemoteModelError(DepthflowError):
    """Remote model answered with a non-success or unusable response."""


class RemoteTimeoutError(RemoteModelError):
    """Remote model did not answer before its deadline."""


class InternalComputationError(DepthflowError):
    """Local detector/ensemble computation failed unexpectedly."""
