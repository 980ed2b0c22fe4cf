"""
Error kinds raised by the cutout pipeline.

Every builder and refinement failure surfaces as a `SegmentationError`
subclass so callers can branch on the kind without string matching.
"""

from __future__ import annotations


class SegmentationError(Exception):
    """Base class for all tagged pipeline failures."""


class InvalidImageError(SegmentationError, ValueError):
    """Zero-area image, undecodable bytes, or mask/pixel dimension mismatch."""


class MaskDecodeError(SegmentationError):
    """The external segmenter output could not be normalized into a [0, 1] mask."""


class NoSubjectDetectedError(MaskDecodeError):
    """The external segmenter returned zero detections."""


class SegmentationTimeoutError(SegmentationError):
    """The external segmenter did not answer within the configured timeout."""


class SegmenterUnavailableError(SegmentationError):
    """The learned strategy was requested but no ready segmenter was supplied."""


class PipelineCancelledError(SegmentationError):
    """A cancellation token was triggered between pipeline stages."""


# Failures of the learned path that trigger the heuristic fallback.
RECOVERABLE_ERRORS = (
    MaskDecodeError,
    SegmentationTimeoutError,
    SegmenterUnavailableError,
)
