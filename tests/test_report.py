"""Report rendering from progress snapshots."""

import io
from datetime import datetime, timezone

import pytest
from rich.console import Console

from hlspipe.orchestrator.progress import CorruptStateError, ProgressStore
from hlspipe.reporting.report import format_duration, format_time, ReportGenerator
from hlspipe.schemas.progress import BatchRecord, BatchStats, ItemRecord

NOW = datetime(2024, 5, 1, 10, 5, 30, tzinfo=timezone.utc)


def _at(minute: int, second: int = 0) -> datetime:
    return datetime(2024, 5, 1, 10, minute, second, tzinfo=timezone.utc)


@pytest.fixture
def batch() -> BatchRecord:
    steps = ["download", "compress_240p", "compress_360p", "hls_generation", "upload", "cleanup"]
    return BatchRecord(
        items={
            "zeta": ItemRecord(
                key="latent-videos/zeta.mp4",
                status="completed",
                steps={s: "completed" for s in steps},
                start_time=_at(0),
                end_time=_at(3, 10),
            ),
            "alpha": ItemRecord(
                key="latent-videos/alpha.mp4",
                status="failed",
                steps={
                    "download": "completed",
                    "compress_240p": "completed",
                    "compress_360p": "failed",
                    "hls_generation": "pending",
                    "upload": "pending",
                    "cleanup": "completed",
                },
                start_time=_at(0),
                end_time=_at(1, 5),
                error="compress 360p failed (exit 1)",
                retry_count=2,
            ),
            "mid": ItemRecord(
                key="latent-videos/mid.mp4",
                status="processing",
                steps={
                    "download": "completed",
                    "compress_240p": "processing",
                    "compress_360p": "pending",
                    "hls_generation": "pending",
                    "upload": "pending",
                    "cleanup": "pending",
                },
                start_time=_at(0),
            ),
            "queued": ItemRecord(
                key="latent-videos/queued.mp4",
                steps={s: "pending" for s in steps},
            ),
        },
        last_run=_at(4),
        stats=BatchStats(total=4, completed=1, failed=1),
    )


@pytest.fixture
def reporter() -> ReportGenerator:
    return ReportGenerator(console=Console(file=io.StringIO(), width=120), now=lambda: NOW)


class TestFormatting:

    def test_format_time(self):
        assert format_time(_at(3, 7)) == "2024-05-01 10:03:07 UTC"
        assert format_time(None) == "N/A"

    def test_format_duration(self):
        assert format_duration(_at(0), _at(3, 10)) == "3m 10s"
        assert format_duration(_at(0), None) == "N/A"


class TestRenderText:

    def test_sections(self, reporter, batch):
        text = reporter.render_text(batch, width=120)

        assert "VIDEO PROCESSING PROGRESS TRACKER" in text
        assert "Total Videos:" in text
        assert "1 (25%)" in text
        assert "Last Run:" in text and "2024-05-01 10:04:00 UTC" in text
        assert "FAILED VIDEOS NEED ATTENTION" in text
        assert "CURRENTLY PROCESSING" in text

    def test_items_sorted_by_name(self, reporter, batch):
        text = reporter.render_text(batch, width=120)
        details = text[text.index("VIDEO DETAILS"):]

        positions = [details.index(name) for name in ("alpha", "mid", "queued", "zeta")]
        assert positions == sorted(positions)

    def test_failed_item_details(self, reporter, batch):
        text = reporter.render_text(batch, width=120)
        failed = text[text.index("FAILED VIDEOS NEED ATTENTION"):]

        assert "Last completed step: compress_240p" in failed
        assert "Error: compress 360p failed (exit 1)" in failed
        assert "Retries: 2" in failed

    def test_processing_item_details(self, reporter, batch):
        text = reporter.render_text(batch, width=120)

        assert "Current step: compress_240p" in text[text.index("CURRENTLY PROCESSING"):]
        assert "5m 30s (running)" in text

    def test_durations(self, reporter, batch):
        text = reporter.render_text(batch, width=120)

        assert "3m 10s" in text
        assert "1m 5s" in text

    def test_step_breakdown_only_for_active_items(self, reporter, batch):
        text = reporter.render_text(batch, width=120)
        breakdown = text[text.index("STEP BREAKDOWN"):text.index("FAILED VIDEOS NEED ATTENTION")]

        assert "alpha" in breakdown
        assert "mid" in breakdown
        assert "zeta" not in breakdown
        assert "queued" not in breakdown
        assert "✗ compress_360p: failed" in breakdown

    def test_deterministic(self, reporter, batch):
        assert reporter.render_text(batch) == reporter.render_text(batch)

    def test_empty_batch(self, reporter):
        text = reporter.render_text(BatchRecord())

        assert "Total Videos:" in text
        assert "0 (0%)" in text
        assert "FAILED VIDEOS" not in text


class TestShow:

    def test_missing_file(self, tmp_path):
        output = io.StringIO()
        reporter = ReportGenerator(console=Console(file=output, width=120))
        path = tmp_path / "processing-progress.json"

        assert reporter.show(path) is False
        assert "No progress file found" in output.getvalue()
        assert not path.exists()

    def test_existing_file(self, tmp_path, batch):
        path = tmp_path / "processing-progress.json"
        path.write_text(batch.to_json())
        output = io.StringIO()
        reporter = ReportGenerator(console=Console(file=output, width=120), now=lambda: NOW)

        assert reporter.show(path) is True
        assert "FAILED VIDEOS NEED ATTENTION" in output.getvalue()
        assert str(path) in output.getvalue()

    def test_corrupt_file(self, tmp_path, reporter):
        path = tmp_path / "processing-progress.json"
        path.write_text("[]")

        with pytest.raises(CorruptStateError):
            reporter.show(path)


class TestWatch:

    def test_rereads_file_between_renders(self, tmp_path, batch):
        path = tmp_path / "processing-progress.json"
        output = io.StringIO()
        reporter = ReportGenerator(console=Console(file=output, width=120), now=lambda: NOW)
        sleeps = []

        def fake_sleep(seconds):
            sleeps.append(seconds)
            if len(sleeps) == 2:
                path.write_text(batch.to_json())

        renders = reporter.watch(path, interval=3.0, max_refreshes=3, sleep=fake_sleep)

        assert renders == 3
        assert sleeps == [3.0, 3.0]
        assert "VIDEO PROCESSING PROGRESS TRACKER" in output.getvalue()

    def test_waits_for_missing_file(self, tmp_path):
        output = io.StringIO()
        reporter = ReportGenerator(console=Console(file=output, width=120))

        reporter.watch(tmp_path / "none.json", max_refreshes=1, sleep=lambda s: None)

        assert "No progress file found" in output.getvalue()
        assert not (tmp_path / "none.json").exists()

    def test_store_written_file_is_readable(self, tmp_path, clock):
        store = ProgressStore(tmp_path / "p.json", clock=clock)
        store.load()
        store.init_item("latent-videos/ep1.mp4", ["download", "cleanup"])

        text = ReportGenerator(now=lambda: NOW).render_text(ProgressStore.read_snapshot(tmp_path / "p.json"))

        assert "ep1" in text
