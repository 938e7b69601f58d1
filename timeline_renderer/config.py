import json
from dataclasses import dataclass
from functools import lru_cache

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = "Timeline Renderer"
    app_version: str = "0.1.0"
    git_hash: str = "unknown"  # Set via GIT_HASH env var at build time
    log_level: str = "INFO"
    port: int = 10000

    # CORS - stored as string, parsed via computed property
    cors_origins_raw: str = (
        "https://msimbi.com,https://www.msimbi.com,https://lovable.dev"
    )
    cors_origin_regex: str | None = r"https://.*\.lovable(app|project)?\.com"

    @computed_field
    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins from pipe/comma-separated string or JSON array."""
        v = self.cors_origins_raw
        # Try JSON first
        if v.startswith("["):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        # Try pipe-separated (for Cloud Run compatibility)
        if "|" in v:
            return [origin.strip() for origin in v.split("|") if origin.strip()]
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    # Working storage
    work_root: str = "/tmp/timeline-renderer/jobs"
    upload_dir: str = "/tmp/timeline-renderer/uploads"
    max_upload_size_mb: int = 500

    # Asset fetching
    fetch_timeout_s: float = 300.0
    fetch_connect_timeout_s: float = 30.0
    fetch_chunk_size: int = 1024 * 1024

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    ffmpeg_preset: str = "fast"
    ffmpeg_threads: int = 2
    ffmpeg_max_muxing_queue: int = 1024
    # Lines of stderr kept in memory per invocation
    engine_diagnostic_lines: int = 200
    overlay_font_file: str | None = None

    # Render defaults (consumed once via RenderDefaults)
    render_output_width: int = 1280
    render_output_height: int = 720
    render_fps: int = 30
    render_video_bitrate: str = "4M"
    render_audio_bitrate: str = "160k"
    render_audio_sample_rate: int = 48000
    # Clip length used when neither trim nor probe gives a duration
    render_fallback_clip_duration_s: float = 10.0
    # Outputs smaller than this are treated as failed renders
    render_min_output_bytes: int = 100_000

    # Jobs
    max_concurrent_jobs: int = 2
    job_ttl_seconds: int = 3600
    retention_sweep_interval_s: int = 300
    shutdown_drain_timeout_s: float = 30.0


@lru_cache
def get_settings() -> Settings:
    return Settings()


@dataclass(frozen=True)
class RenderDefaults:
    """Output defaults applied by the compiler to unset timeline settings.

    width/height: 1280x720 canvas, every clip is letterboxed into it
    fps: 30
    video_bitrate: 4M
    audio_bitrate: 160k
    sample_rate: 48000 Hz stereo, all audio branches are normalised to it
    fallback_clip_duration_s: 10s, used when a clip has no trim end and the
        asset duration could not be probed
    """

    width: int = 1280
    height: int = 720
    fps: int = 30
    video_bitrate: str = "4M"
    audio_bitrate: str = "160k"
    sample_rate: int = 48000
    fallback_clip_duration_s: float = 10.0
    video_codec: str = "libx264"
    audio_codec: str = "aac"
    preset: str = "fast"

    @classmethod
    def from_settings(cls, settings: Settings) -> "RenderDefaults":
        return cls(
            width=settings.render_output_width,
            height=settings.render_output_height,
            fps=settings.render_fps,
            video_bitrate=settings.render_video_bitrate,
            audio_bitrate=settings.render_audio_bitrate,
            sample_rate=settings.render_audio_sample_rate,
            fallback_clip_duration_s=settings.render_fallback_clip_duration_s,
            preset=settings.ffmpeg_preset,
        )
