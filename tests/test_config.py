"""Settings loading from defaults, YAML and environment variables."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from hlspipe.config import CONFIG_FILE_ENV, load_settings, PipelineConfig, QualityProfile, StorageConfig


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch):
    """Run from an empty directory with no HLSPIPE_ variables set."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv(CONFIG_FILE_ENV, str(tmp_path / "config.yaml"))
    for name in ("HLSPIPE_STORAGE__BUCKET", "HLSPIPE_PIPELINE__WORKERS"):
        monkeypatch.delenv(name, raising=False)


class TestDefaults:

    def test_defaults(self):
        settings = load_settings()

        assert settings.storage.bucket == "simple-storage"
        assert settings.storage.source_prefix == "latent-videos"
        assert settings.storage.output_prefix == "processed-videos"
        assert [q.label for q in settings.pipeline.qualities] == ["240p", "360p", "480p", "720p"]
        assert [q.crf for q in settings.pipeline.qualities] == [30, 28, 26, 24]
        assert [q.label for q in settings.pipeline.ingest_qualities] == ["240p", "360p", "480p"]
        assert settings.pipeline.segment_duration == 6
        assert settings.pipeline.retry_max_attempts == 1
        assert settings.paths.progress_file == Path("processing-progress.json")

    def test_bandwidth_table(self):
        config = PipelineConfig()

        assert config.bandwidth_for("240p") == 500_000
        assert config.bandwidth_for("720p") == 2_500_000
        assert config.bandwidth_for("1080p") == 800_000


class TestSources:

    def test_yaml_file(self, tmp_path):
        config_path = tmp_path / "custom.yaml"
        config_path.write_text(yaml.safe_dump({
            "storage": {"backend": "local", "bucket": "yaml-bucket", "output_prefix": "/hls/"},
            "pipeline": {"qualities": [{"label": "240p", "crf": 30, "height": 240}], "workers": 2},
            "paths": {"progress_file": "state/progress.json"},
        }))

        settings = load_settings(config_path)

        assert settings.storage.backend == "local"
        assert settings.storage.bucket == "yaml-bucket"
        assert settings.storage.output_prefix == "hls"
        assert [q.label for q in settings.pipeline.qualities] == ["240p"]
        assert settings.pipeline.workers == 2
        assert settings.paths.progress_file == Path("state/progress.json")

    def test_environment_overrides_yaml(self, tmp_path, monkeypatch):
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.safe_dump({"storage": {"backend": "local", "bucket": "yaml-bucket"}}))
        monkeypatch.setenv("HLSPIPE_STORAGE__BUCKET", "env-bucket")
        monkeypatch.setenv("HLSPIPE_PIPELINE__WORKERS", "4")

        settings = load_settings()

        assert settings.storage.bucket == "env-bucket"
        assert settings.storage.backend == "local"
        assert settings.pipeline.workers == 4


class TestValidation:

    def test_duplicate_labels_rejected(self):
        profile = QualityProfile(label="240p", crf=30, height=240)

        with pytest.raises(ValidationError):
            PipelineConfig(qualities=[profile, profile])

    def test_empty_ladder_rejected(self):
        with pytest.raises(ValidationError):
            PipelineConfig(qualities=[])

    def test_crf_range(self):
        with pytest.raises(ValidationError):
            QualityProfile(label="240p", crf=60, height=240)

    def test_invalid_yaml_value(self, tmp_path):
        config_path = tmp_path / "bad.yaml"
        config_path.write_text(yaml.safe_dump({"pipeline": {"retry_max_attempts": 0}}))

        with pytest.raises(ValidationError):
            load_settings(config_path)

    def test_storage_prefix_slashes(self):
        assert StorageConfig(source_prefix="/latent-videos/").source_prefix == "latent-videos"
