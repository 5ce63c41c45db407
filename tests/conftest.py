import asyncio
import io
from typing import Dict, Iterable, List, Optional, Tuple

import pytest
from PIL import Image

from studiostyle.core.exceptions import ProviderError
from studiostyle.jobs.models import SourceFile
from studiostyle.pipeline.provider import REMOVE_BACKGROUND, TransformProvider


def make_png(color=(200, 30, 30), size=(8, 8), mode="RGB") -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def make_jpeg(color=(30, 200, 30), size=(8, 8)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="JPEG")
    return buffer.getvalue()


TRANSPARENT_RESULT = make_png((0, 0, 0, 0), size=(4, 4), mode="RGBA")
WHITE_RESULT = make_png((255, 255, 255), size=(4, 4))


def make_source(index: int) -> SourceFile:
    """A distinct in-memory PNG per index."""
    return SourceFile.from_bytes(
        make_png((index * 20 % 256, 100, 50)),
        f"photo{index}.png",
        last_modified=1_700_000_000_000 + index
    )


class FakeProvider(TransformProvider):
    """
    In-memory provider.

    Each call waits on a gate keyed by the input bytes until released
    (or release_all() was called). Inputs listed in fail_on raise ProviderError.
    """

    def __init__(self, fail_on: Iterable[bytes] = (), auto_release: bool = False):
        self.fail_on = set(fail_on)
        self._release_all = auto_release
        self._gates: Dict[bytes, asyncio.Event] = {}
        self.calls: List[Tuple[bytes, str, str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def gate(self, image_bytes: bytes) -> asyncio.Event:
        event = self._gates.setdefault(image_bytes, asyncio.Event())
        if self._release_all:
            event.set()
        return event

    def release(self, image_bytes: bytes):
        self.gate(image_bytes).set()

    def release_all(self):
        self._release_all = True
        for event in self._gates.values():
            event.set()

    async def transform(self, image_bytes, mime_type, instruction, operation):
        self.calls.append((image_bytes, mime_type, operation))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await self.gate(image_bytes).wait()
            if image_bytes in self.fail_on:
                raise ProviderError("Quota exceeded for image model", operation=operation)
            return TRANSPARENT_RESULT if operation == REMOVE_BACKGROUND else WHITE_RESULT
        finally:
            self.in_flight -= 1


class StatusRecorder:
    """Scheduler observer keeping each job's distinct status sequence."""

    def __init__(self, limit: Optional[int] = None, scheduler=None):
        self.history: Dict[str, list] = {}
        self.max_processing = 0
        self.limit = limit
        self.scheduler = scheduler
        self.violations: List[str] = []

    def __call__(self, snapshot):
        processing = {job.id for job in snapshot if job.status.value == "PROCESSING"}
        self.max_processing = max(self.max_processing, len(processing))
        if self.scheduler is not None and processing != set(self.scheduler.admitted):
            self.violations.append("admitted set out of sync")
        for job in snapshot:
            seen = self.history.setdefault(job.id, [])
            if not seen or seen[-1] != job.status:
                seen.append(job.status)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()
