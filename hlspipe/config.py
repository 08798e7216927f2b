"""Configuration management with YAML and environment variable support."""

import os
from pathlib import Path
from typing import ClassVar, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)

# Points the YAML source at a file other than ./config.yaml
CONFIG_FILE_ENV = "HLSPIPE_CONFIG_FILE"


class YamlConfigSettingsSource(PydanticBaseSettingsSource):
    """Custom settings source that loads configuration from YAML file."""

    def get_field_value(self, field, field_name: str):
        # Not used with prepare method
        pass

    def prepare_field_value(self, field_name: str, field, value, value_is_complex: bool):
        return value

    def __call__(self):
        yaml_path = Path(os.environ.get(CONFIG_FILE_ENV, "config.yaml"))
        if not yaml_path.exists():
            return {}

        with open(yaml_path) as f:
            data = yaml.safe_load(f) or {}

        return data


class QualityProfile(BaseModel):
    """One rendition target of a quality ladder.

    Width is not configured: the encoder derives it from the source
    aspect ratio for the given height.
    """

    label: str
    crf: int = Field(ge=0, le=51)
    height: int = Field(gt=0)


BATCH_LADDER = [
    QualityProfile(label="240p", crf=30, height=240),
    QualityProfile(label="360p", crf=28, height=360),
    QualityProfile(label="480p", crf=26, height=480),
    QualityProfile(label="720p", crf=24, height=720),
]

# The single-asset ingest path historically stops at 480p
INGEST_LADDER = BATCH_LADDER[:3]


class StorageConfig(BaseModel):
    """Object store connection and key layout."""

    backend: Literal["s3", "local"] = "s3"
    bucket: str = "simple-storage"
    account_id: Optional[str] = None
    endpoint_url: Optional[str] = None
    region: str = "auto"
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    local_root: Path = Path("object-store")
    source_prefix: str = "latent-videos"
    output_prefix: str = "processed-videos"
    connect_timeout_seconds: float = 30.0
    read_timeout_seconds: float = 300.0

    @field_validator("source_prefix", "output_prefix")
    @classmethod
    def strip_slashes(cls, v: str) -> str:
        """Keys are joined with '/', so prefixes are stored bare."""
        return v.strip("/")

    def resolved_endpoint(self) -> Optional[str]:
        """Explicit endpoint wins; otherwise derive the R2 endpoint from the account id."""
        if self.endpoint_url:
            return self.endpoint_url
        if self.account_id:
            return f"https://{self.account_id}.r2.cloudflarestorage.com"
        return None


class PipelineConfig(BaseModel):
    """Pipeline execution parameters."""

    qualities: list[QualityProfile] = Field(default_factory=lambda: list(BATCH_LADDER))
    ingest_qualities: list[QualityProfile] = Field(default_factory=lambda: list(INGEST_LADDER))
    segment_duration: int = Field(default=6, gt=0)
    bandwidth: dict[str, int] = Field(
        default_factory=lambda: {
            "240p": 500_000,
            "360p": 800_000,
            "480p": 1_200_000,
            "720p": 2_500_000,
        }
    )
    default_bandwidth: int = 800_000
    source_extensions: list[str] = Field(default_factory=lambda: [".mp4"])
    preset: str = "medium"
    audio_bitrate: str = "128k"
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    encode_timeout_seconds: float = 3600.0
    probe_timeout_seconds: float = 60.0
    download_timeout_seconds: float = 1800.0
    retry_max_attempts: int = Field(default=1, ge=1)
    retry_base_delay: float = Field(default=2.0, ge=0)
    workers: int = Field(default=1, ge=1)

    @field_validator("qualities", "ingest_qualities")
    @classmethod
    def labels_unique(cls, v: list[QualityProfile]) -> list[QualityProfile]:
        """Stage names are built from labels, so duplicates would collide."""
        if not v:
            raise ValueError("quality ladder must not be empty")
        labels = [q.label for q in v]
        if len(labels) != len(set(labels)):
            raise ValueError(f"duplicate quality labels: {labels}")
        return v

    def bandwidth_for(self, label: str) -> int:
        return self.bandwidth.get(label, self.default_bandwidth)


class PathsConfig(BaseModel):
    """Local filesystem locations."""

    progress_file: Path = Path("processing-progress.json")
    tmp_dir: Path = Path("temp")

    @field_validator("progress_file", "tmp_dir", mode="before")
    @classmethod
    def convert_to_path(cls, v):
        """Convert string to Path object."""
        if isinstance(v, str):
            return Path(v)
        return v


class Settings(BaseSettings):
    """Main application settings with YAML and environment variable support.

    Configuration sources (in priority order):
    1. Environment variables (prefix: HLSPIPE_, delimiter: __)
    2. .env file
    3. YAML file (config.yaml, or the file named by HLSPIPE_CONFIG_FILE)
    4. Field defaults
    """

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_nested_delimiter="__",
        env_prefix="HLSPIPE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    storage: StorageConfig = Field(default_factory=StorageConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ):
        """Customize settings sources to include YAML configuration.

        Priority order (highest to lowest):
        1. Environment variables
        2. YAML file
        3. Init settings (programmatic defaults)
        """
        return (
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls),
            init_settings,
        )


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Build a Settings instance; callers pass it on explicitly.

    Args:
        config_path: YAML file to use instead of ./config.yaml

    Raises:
        pydantic.ValidationError: If any source holds an invalid value.
    """
    if config_path is not None:
        os.environ[CONFIG_FILE_ENV] = str(config_path)
    return Settings()
