import asyncio
from unittest.mock import AsyncMock

import pytest

from studiostyle.core.exceptions import NoImageReturned, ProviderError
from studiostyle.pipeline.provider import TransformProvider
from studiostyle.pipeline.stages import (
    PNG_SIGNATURE,
    ensure_png,
    gather_all_or_fail,
    process_transform_stage,
)

from conftest import TRANSPARENT_RESULT, WHITE_RESULT, make_jpeg, make_png


@pytest.mark.asyncio
async def test_gather_returns_results_in_argument_order():
    async def value(result, delay):
        await asyncio.sleep(delay)
        return result

    assert await gather_all_or_fail(value("slow", 0.02), value("fast", 0)) == ["slow", "fast"]


@pytest.mark.asyncio
async def test_gather_cancels_siblings_on_failure():
    sibling_cancelled = asyncio.Event()

    async def hangs():
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            sibling_cancelled.set()
            raise

    async def fails():
        await asyncio.sleep(0)
        raise ProviderError("provider down")

    with pytest.raises(ProviderError, match="provider down"):
        await gather_all_or_fail(hangs(), fails())
    assert sibling_cancelled.is_set()


@pytest.mark.asyncio
async def test_gather_reports_first_listed_failure():
    async def fails(error):
        raise error

    with pytest.raises(NoImageReturned):
        await gather_all_or_fail(fails(NoImageReturned()), fails(ProviderError("second")))


def test_ensure_png_passes_png_through():
    data = make_png()
    assert ensure_png(data, "remove_background") is data


def test_ensure_png_converts_other_formats():
    converted = ensure_png(make_jpeg(), "add_studio_white_background")
    assert converted.startswith(PNG_SIGNATURE)


def test_ensure_png_rejects_garbage():
    with pytest.raises(ProviderError) as exc_info:
        ensure_png(b"definitely not an image", "remove_background")
    assert exc_info.value.operation == "remove_background"


@pytest.mark.asyncio
async def test_transform_stage_calls_both_operations():
    # Arrange
    provider = AsyncMock(spec=TransformProvider)
    provider.remove_background.return_value = TRANSPARENT_RESULT
    provider.add_studio_white_background.return_value = make_jpeg((255, 255, 255))
    source = make_png()

    # Act
    results = await process_transform_stage(source, "image/png", provider)

    # Assert
    assert results.transparent == TRANSPARENT_RESULT
    assert results.white_background.startswith(PNG_SIGNATURE)
    provider.remove_background.assert_awaited_once_with(source, "image/png")
    provider.add_studio_white_background.assert_awaited_once_with(source, "image/png")


@pytest.mark.asyncio
async def test_transform_stage_fails_if_either_operation_fails():
    provider = AsyncMock(spec=TransformProvider)
    provider.remove_background.return_value = TRANSPARENT_RESULT
    provider.add_studio_white_background.side_effect = NoImageReturned()

    with pytest.raises(NoImageReturned):
        await process_transform_stage(make_png(), "image/png", provider)


@pytest.mark.asyncio
async def test_transform_stage_with_white_result_only_png():
    provider = AsyncMock(spec=TransformProvider)
    provider.remove_background.return_value = TRANSPARENT_RESULT
    provider.add_studio_white_background.return_value = WHITE_RESULT

    results = await process_transform_stage(make_png(), "image/png", provider)
    assert results.white_background == WHITE_RESULT
