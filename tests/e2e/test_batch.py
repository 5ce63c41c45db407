import asyncio
import base64
import json

import httpx
import pytest

from studiostyle import cli
from studiostyle.core.storage import LocalStorage
from studiostyle.jobs.models import JobStatus
from studiostyle.pipeline.provider import REMOVE_BACKGROUND_PROMPT, GeminiProvider

from conftest import TRANSPARENT_RESULT, WHITE_RESULT, make_png, make_source


class FakeGemini:
    """Async MockTransport handler imitating generateContent."""

    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.in_flight = 0
        self.max_in_flight = 0
        self.requests = 0

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01)
            image_part, text_part = json.loads(request.content)["contents"][0]["parts"]
            image = base64.b64decode(image_part["inline_data"]["data"])
            if image in self.fail_on:
                return httpx.Response(500, json={"error": {"message": "Internal error encountered."}})
            result = TRANSPARENT_RESULT if text_part["text"] == REMOVE_BACKGROUND_PROMPT else WHITE_RESULT
            return httpx.Response(200, json={"candidates": [{"content": {"parts": [
                {"inlineData": {"mimeType": "image/png", "data": base64.b64encode(result).decode()}}
            ]}}]})
        finally:
            self.in_flight -= 1


def _gemini(handler: FakeGemini) -> GeminiProvider:
    return GeminiProvider(
        api_key="test-key",
        api_url="https://provider.test/v1beta",
        transport=httpx.MockTransport(handler)
    )


@pytest.mark.asyncio
async def test_batch_processes_exports_and_isolates_failures(tmp_path):
    sources = [make_source(i) for i in range(1, 6)]
    gemini = FakeGemini(fail_on=[sources[2].data])
    storage = LocalStorage(base_path=str(tmp_path))

    async with _gemini(gemini) as provider:
        jobs, exports = await cli.run_batch(sources, provider, storage, concurrency_limit=2)

    by_name = {job.source.filename: job for job in jobs}
    assert by_name["photo3.png"].status == JobStatus.FAILED
    assert "Internal error encountered." in by_name["photo3.png"].failure_reason
    completed = [job for job in jobs if job.status == JobStatus.COMPLETED]
    assert len(completed) == 4

    assert set(exports) == {job.id for job in completed}
    for keys in exports.values():
        assert storage.get_path(keys["transparent"]).read_bytes() == TRANSPARENT_RESULT
        assert storage.get_path(keys["white_background"]).read_bytes() == WHITE_RESULT

    assert gemini.requests == 10
    assert gemini.max_in_flight <= 4


def test_cli_returns_2_without_images(tmp_path):
    (tmp_path / "notes.txt").write_text("no pictures here")
    assert cli.main(["process", str(tmp_path), "--out", str(tmp_path / "out")]) == 2


def test_cli_returns_2_for_missing_path(tmp_path):
    assert cli.main(["process", str(tmp_path / "missing.png")]) == 2


def test_cli_processes_directory(tmp_path, monkeypatch, capsys):
    photos = tmp_path / "photos"
    photos.mkdir()
    (photos / "shoe.png").write_bytes(make_png((10, 20, 30)))
    (photos / "bag.png").write_bytes(make_png((40, 50, 60)))
    (photos / "readme.txt").write_text("skip me")
    out_dir = tmp_path / "out"

    gemini = FakeGemini()
    monkeypatch.setattr(cli, "GeminiProvider", lambda: _gemini(gemini))

    exit_code = cli.main(["process", str(photos), "--out", str(out_dir), "--concurrency", "1"])

    assert exit_code == 0
    written = sorted(p.name for p in (out_dir / "results").iterdir())
    assert len(written) == 4
    assert all(name.startswith("processed_image_") and name.endswith(".png") for name in written)
    assert "2/2 images processed" in capsys.readouterr().out


def test_cli_exit_code_reflects_failures(tmp_path, monkeypatch):
    bad = make_png((1, 1, 1))
    (tmp_path / "bad.png").write_bytes(bad)

    gemini = FakeGemini(fail_on=[bad])
    monkeypatch.setattr(cli, "GeminiProvider", lambda: _gemini(gemini))

    metrics_file = tmp_path / "studiostyle.prom"

    exit_code = cli.main([
        "process", str(tmp_path / "bad.png"),
        "--out", str(tmp_path / "out"),
        "--metrics-file", str(metrics_file)
    ])

    assert exit_code == 1
    metrics = metrics_file.read_text()
    assert 'studiostyle_jobs_total{status="failed"}' in metrics
    assert "provider_calls_total" in metrics
