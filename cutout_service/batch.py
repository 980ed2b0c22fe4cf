"""
Batch helper for queue workers.

Queue integrations (Redis, a DB table, ...) fetch image bytes in whatever way
suits them and hand them over as `BatchItem`s. Items are independent: each
gets its own buffers and masks, and they are processed concurrently.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

from . import config
from .cancellation import CancellationToken
from .options import ProcessingOptions
from .pipeline import CutoutResult, run_pipeline
from .preprocessing import decode_image_bytes
from .segmenter import ExternalSegmenter

logger = logging.getLogger(__name__)


@dataclass
class BatchItem:
    image_bytes: bytes
    strategy: str = "auto"
    options: Optional[ProcessingOptions] = None
    cancel_token: Optional[CancellationToken] = None


async def _process_item(
    index: int,
    item: BatchItem,
    segmenter: Optional[ExternalSegmenter],
    settings: config.Settings,
) -> CutoutResult:
    logger.info("Processing batch item %d strategy=%s", index, item.strategy)
    pixels = await asyncio.to_thread(decode_image_bytes, item.image_bytes)
    return await run_pipeline(
        pixels,
        strategy=item.strategy,
        options=item.options,
        segmenter=segmenter,
        cancel_token=item.cancel_token,
        settings=settings,
    )


async def process_batch(
    items: Sequence[BatchItem],
    segmenter: Optional[ExternalSegmenter] = None,
    settings: Optional[config.Settings] = None,
    return_exceptions: bool = False,
) -> List[Union[CutoutResult, BaseException]]:
    """
    Process `items` concurrently; results match the input order.

    With `return_exceptions=True` a failing item yields its exception in
    place of a result instead of aborting the whole batch.
    """
    settings = settings or config.get_settings()
    tasks = [_process_item(i, item, segmenter, settings) for i, item in enumerate(items)]
    results = await asyncio.gather(*tasks, return_exceptions=return_exceptions)
    failed = sum(1 for r in results if isinstance(r, BaseException))
    if failed:
        logger.warning("Batch finished with %d/%d failed items", failed, len(results))
    return list(results)
