import pytest

from cutout_service.cancellation import CancellationToken
from cutout_service.errors import PipelineCancelledError, SegmentationError


def test_token_starts_active():
    token = CancellationToken()
    assert not token.cancelled
    token.raise_if_cancelled("builder")


def test_cancel_raises_with_stage_and_reason():
    token = CancellationToken()
    token.cancel("new image selected")
    assert token.cancelled
    with pytest.raises(PipelineCancelledError, match="refinement: new image selected"):
        token.raise_if_cancelled("refinement")
    assert issubclass(PipelineCancelledError, SegmentationError)
