import os
import tempfile
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_EXTENSIONS = [".svs", ".ndpi", ".tif", ".tiff", ".jp2", ".vms", ".vmu", ".scn"]
DEFAULT_PARTIAL_SUFFIXES = [".tmp", ".temp", ".part", ".crdownload", ".download"]


def _normalize_suffixes(values: List[str]) -> List[str]:
    normalized = []
    for value in values:
        value = value.strip().lower()
        if not value:
            continue
        if not value.startswith("."):
            value = f".{value}"
        if value not in normalized:
            normalized.append(value)
    return normalized


class WatchConfig(BaseModel):
    """Directory watching and admission settings."""
    watch_root: Optional[str] = None
    output_root: Optional[str] = None
    extensions: List[str] = Field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    partial_suffixes: List[str] = Field(default_factory=lambda: list(DEFAULT_PARTIAL_SUFFIXES))
    # Seconds a file's size/mtime must stay unchanged before it is reported.
    # Raise this for network copies of multi-gigabyte slides.
    stability_window_s: float = Field(default=5.0, ge=0.0)
    poll_interval_s: float = Field(default=1.0, gt=0.0)
    min_file_age_s: float = Field(default=5.0, ge=0.0)
    recheck_delay_s: float = Field(default=10.0, ge=0.0)
    scan_existing: bool = True

    @field_validator("extensions", "partial_suffixes")
    @classmethod
    def normalize_suffixes(cls, v: List[str]) -> List[str]:
        return _normalize_suffixes(v)


class PoolConfig(BaseModel):
    max_concurrency: int = Field(default=6, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_delay_s: float = Field(default=5.0, ge=0.0)
    kill_grace_s: float = Field(default=2.0, ge=0.0)
    max_runtime_s: Optional[float] = Field(default=None, gt=0.0)
    history_size: int = Field(default=500, ge=0)


class ToolsConfig(BaseModel):
    """External libvips command line settings."""
    vips_command: List[str] = Field(default_factory=lambda: ["vips"])
    header_command: List[str] = Field(default_factory=lambda: ["vipsheader"])
    thread_budget: int = Field(default_factory=lambda: os.cpu_count() or 1, gt=0)
    icc_profile: str = "srgb"
    tile_size: int = Field(default=256, gt=0)
    overlap: int = Field(default=1, ge=0)
    jpeg_quality: int = Field(default=90, ge=1, le=100)
    progress_interval_s: float = Field(default=1.0, ge=0.0)
    intermediate_dir: str = Field(default_factory=tempfile.gettempdir)
    extract_metadata: bool = True

    @field_validator("vips_command", "header_command")
    @classmethod
    def validate_command(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("command must not be empty")
        return v


class RemoteConfig(BaseModel):
    """Delegation of conversions to a separate conversion server."""
    enabled: bool = False
    url: str = "http://localhost:3001"
    poll_interval_s: float = Field(default=1.0, gt=0.0)
    timeout_s: float = Field(default=30.0, gt=0.0)
    max_poll_errors: int = Field(default=3, ge=1)

    @model_validator(mode="after")
    def validate_url(self):
        if self.enabled and not self.url.startswith(("http://", "https://")):
            raise ValueError(f"Invalid remote url: {self.url}")
        return self


class GeneralConfig(BaseModel):
    debug: bool = False
    log_path: Optional[str] = None


class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    watch: WatchConfig = Field(default_factory=WatchConfig)
    pool: PoolConfig = Field(default_factory=PoolConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)

    def threads_per_pipeline(self) -> int:
        """Share of the external tool thread budget each pipeline may use."""
        return max(1, self.tools.thread_budget // self.pool.max_concurrency)
