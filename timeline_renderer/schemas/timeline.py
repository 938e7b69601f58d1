from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

MediaType = Literal["video", "audio"]

VisualFilterType = Literal[
    "brightness",
    "contrast",
    "saturation",
    "hue",
    "blur",
    "sharpen",
    "invert",
    "grayscale",
]


class TimelineModel(BaseModel):
    """Base for timeline payloads: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Media references
# =============================================================================


class MediaSource(TimelineModel):
    """A remote URL or the id returned by PUT /uploads/{name}."""

    url: str | None = None
    upload_id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _accept_plain_string(cls, data: Any) -> Any:
        if isinstance(data, str):
            if data.startswith(("http://", "https://")):
                return {"url": data}
            return {"uploadId": data}
        return data

    @model_validator(mode="after")
    def _exactly_one(self) -> "MediaSource":
        if bool(self.url) == bool(self.upload_id):
            raise ValueError("source needs exactly one of url or uploadId")
        return self

    @property
    def key(self) -> str:
        """Stable identity used to match clips with fetched assets."""
        if self.url:
            return f"url:{self.url}"
        return f"upload:{self.upload_id}"

    def __str__(self) -> str:
        return self.url or f"upload {self.upload_id}"


# =============================================================================
# Clip transforms
# =============================================================================


class Trim(TimelineModel):
    """Source range in seconds. end and duration are alternatives."""

    start: float = 0.0
    end: float | None = None
    duration: float | None = None


class VisualFilter(TimelineModel):
    type: VisualFilterType
    value: float | None = None


class Crop(TimelineModel):
    x: int = 0
    y: int = 0
    width: int
    height: int


class Scale(TimelineModel):
    """Per-clip resize. A missing side keeps the aspect ratio."""

    width: int | None = None
    height: int | None = None

    @model_validator(mode="after")
    def _one_side(self) -> "Scale":
        if self.width is None and self.height is None:
            raise ValueError("scale needs width or height")
        return self


class OverlayStyle(TimelineModel):
    font_size: int = 48
    color: str = "white"
    opacity: float = 1.0
    box_color: str | None = None
    # Image overlays: target width in pixels, height follows the aspect ratio
    width: int | None = None


class Overlay(TimelineModel):
    """Text or image drawn over a clip during [start, end) of the clip's output."""

    type: Literal["text", "image"]
    text: str | None = None
    source: MediaSource | None = None
    x: int | None = None  # None = centered
    y: int | None = None
    start: float = 0.0
    end: float | None = None  # None = until the clip ends
    style: OverlayStyle = Field(default_factory=OverlayStyle)

    @model_validator(mode="after")
    def _content_matches_type(self) -> "Overlay":
        if self.type == "text" and not self.text:
            raise ValueError("text overlay needs text")
        if self.type == "image" and self.source is None:
            raise ValueError("image overlay needs source")
        return self


class Clip(TimelineModel):
    source: MediaSource
    media_type: MediaType = "video"
    trim: Trim | None = None
    speed: float = 1.0
    visual_filters: list[VisualFilter] = Field(default_factory=list)
    crop: Crop | None = None
    scale: Scale | None = None
    overlays: list[Overlay] = Field(default_factory=list)
    audio_volume: float = 1.0


class OutputSettings(TimelineModel):
    """Unset fields fall back to RenderDefaults at compile time."""

    width: int | None = None
    height: int | None = None
    fps: int | None = None
    video_bitrate: str | None = None
    audio_bitrate: str | None = None


class Timeline(TimelineModel):
    clips: list[Clip] = Field(default_factory=list)
    settings: OutputSettings = Field(default_factory=OutputSettings)
    # Audio laid under the concatenated program audio
    soundtrack: list[Clip] = Field(default_factory=list)

    @field_validator("soundtrack")
    @classmethod
    def _soundtrack_is_audio(cls, clips: list[Clip]) -> list[Clip]:
        for clip in clips:
            if clip.media_type != "audio":
                raise ValueError("soundtrack clips must have mediaType 'audio'")
        return clips

    def sources(self) -> list[MediaSource]:
        """Every media reference in timeline order, first occurrence only."""
        seen: dict[str, MediaSource] = {}
        for clip in [*self.clips, *self.soundtrack]:
            seen.setdefault(clip.source.key, clip.source)
            for overlay in clip.overlays:
                if overlay.source is not None:
                    seen.setdefault(overlay.source.key, overlay.source)
        return list(seen.values())


# =============================================================================
# Legacy payload: {"videoMedia": [{"url"}], "audioMedia": [{"url"}]}
# =============================================================================


class LegacyMediaItem(TimelineModel):
    url: str


class LegacyRenderRequest(TimelineModel):
    video_media: list[LegacyMediaItem] = Field(default_factory=list)
    audio_media: list[LegacyMediaItem] = Field(default_factory=list)

    def to_timeline(self) -> Timeline:
        """Concatenate the videos and lay the audio files over them.

        When audio files are given the video's own audio is muted, matching
        the old server which only mapped the audio input. With no videos the
        first audio file becomes the single clip.
        """
        audio = [
            Clip(source=MediaSource(url=item.url), media_type="audio")
            for item in self.audio_media
        ]
        clips = [
            Clip(
                source=MediaSource(url=item.url),
                media_type="video",
                audio_volume=0.0 if audio else 1.0,
            )
            for item in self.video_media
        ]
        if not clips and audio:
            return Timeline(clips=audio[:1], soundtrack=audio[1:])
        return Timeline(clips=clips, soundtrack=audio)


def parse_render_request(payload: dict[str, Any]) -> Timeline:
    """Parse a POST /render body into a Timeline.

    Raises:
        pydantic.ValidationError: If the payload does not match either shape
    """
    if "clips" not in payload and ("videoMedia" in payload or "audioMedia" in payload):
        return LegacyRenderRequest.model_validate(payload).to_timeline()
    return Timeline.model_validate(payload)
