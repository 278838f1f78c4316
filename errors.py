"""Error taxonomy for stream sessions."""

from __future__ import annotations


class StreamError(Exception):
    """Base class for session errors. `status_code` is the HTTP mapping."""

    status_code = 500


class InvalidInputError(StreamError):
    """Missing or malformed locator. No session is created."""

    status_code = 400


class ResourceError(StreamError):
    """Filesystem or process-spawn failure during session setup."""

    status_code = 500


class NotFoundError(StreamError):
    """Unknown or already torn-down session, or missing file."""

    status_code = 404


class NoPlayableContentError(StreamError):
    """Torrent contains no files to stream."""

    status_code = 500


class UpstreamFailure(StreamError):
    """Swarm or transcoder failure. Handled by tearing the session down."""

    status_code = 502


class BufferTimeoutError(UpstreamFailure):
    """Download did not reach the start buffer within the configured limit."""

    status_code = 504
