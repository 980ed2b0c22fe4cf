import asyncio

import numpy as np
import pytest

from cutout_service.batch import BatchItem, process_batch
from cutout_service.errors import InvalidImageError

from conftest import make_pixels, png_bytes


def test_batch_preserves_order(blue_square, settings):
    items = [
        BatchItem(png_bytes(blue_square)),
        BatchItem(png_bytes(make_pixels(10, 10, (9, 9, 9))), strategy="flood_fill"),
    ]
    results = asyncio.run(process_batch(items, settings=settings))
    assert [r.pixels.shape for r in results] == [(50, 50, 4), (10, 10, 4)]
    assert results[0].pixels[25, 25, 3] == 255
    assert np.all(results[1].pixels[..., 3] == 0)


def test_batch_failure_propagates(settings):
    with pytest.raises(InvalidImageError):
        asyncio.run(process_batch([BatchItem(b"garbage")], settings=settings))


def test_batch_can_collect_failures(blue_square, settings):
    items = [BatchItem(b"garbage"), BatchItem(png_bytes(blue_square))]
    results = asyncio.run(process_batch(items, settings=settings, return_exceptions=True))
    assert isinstance(results[0], InvalidImageError)
    assert results[1].strategy == "flood_fill"
