"""
Pipeline Stage Implementations

A job runs both provider transforms concurrently and succeeds only if both
succeed. Results are normalised to PNG before they are attached to the job.
"""

import asyncio
import io
from typing import Any, Awaitable, List

from PIL import Image, UnidentifiedImageError

from studiostyle.core.exceptions import ProviderError
from studiostyle.core.logging import get_logger
from studiostyle.jobs.models import JobResults
from studiostyle.pipeline.provider import (
    ADD_STUDIO_WHITE_BACKGROUND,
    REMOVE_BACKGROUND,
    TransformProvider,
)

logger = get_logger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


async def gather_all_or_fail(*aws: Awaitable[Any]) -> List[Any]:
    """
    Run awaitables concurrently; return all results in argument order.

    If any of them raises, the others are cancelled and the earliest-listed
    failure among those that finished is re-raised.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    failed = [
        task for task in tasks
        if task in done and not task.cancelled() and task.exception() is not None
    ]
    if failed:
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        raise failed[0].exception()

    return [task.result() for task in tasks]


def ensure_png(image_bytes: bytes, operation: str) -> bytes:
    """Pass PNG data through; re-encode any other image format as PNG."""
    if image_bytes.startswith(PNG_SIGNATURE):
        return image_bytes

    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            output_buffer = io.BytesIO()
            image.save(output_buffer, format="PNG")
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise ProviderError(
            f"Provider returned image data that could not be decoded: {e}",
            operation=operation,
            cause=e
        )

    logger.debug("result_reencoded_png", operation=operation, input_size=len(image_bytes))
    return output_buffer.getvalue()


async def process_transform_stage(
    image_bytes: bytes,
    mime_type: str,
    provider: TransformProvider
) -> JobResults:
    """
    Produce both variants for one image.

    Returns:
        JobResults with the transparent and the white-background PNGs
    """
    transparent, white_background = await gather_all_or_fail(
        provider.remove_background(image_bytes, mime_type),
        provider.add_studio_white_background(image_bytes, mime_type),
    )

    transparent = await asyncio.to_thread(ensure_png, transparent, REMOVE_BACKGROUND)
    white_background = await asyncio.to_thread(
        ensure_png, white_background, ADD_STUDIO_WHITE_BACKGROUND
    )

    return JobResults(transparent=transparent, white_background=white_background)
