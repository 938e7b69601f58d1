"""
Timeline compiler: validates a Timeline and lowers it into an ExecutionPlan.

Per-clip video chain, always in this order whatever order the request lists
its filters in:

    trim + timestamp reset -> speed -> eq (brightness, contrast, saturation)
    -> hue -> blur -> sharpen -> invert -> grayscale -> crop -> clip scale
    -> scale/pad to the output canvas -> overlays (in the given order)

Per-clip audio chain:

    atrim + timestamp reset -> atempo -> volume -> sample format/rate/layout
    -> pad and cut to the clip's output duration

A clip without an audio stream gets a silent branch of the same output
duration, and an audio clip gets a black video branch, so both concat
stages always have exactly one input per clip.
"""

import logging
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field

from timeline_renderer.config import RenderDefaults
from timeline_renderer.exceptions import (
    EmptyTimelineError,
    InvalidParameterError,
    InvalidTrimError,
    MissingAssetError,
)
from timeline_renderer.render.plan import (
    EngineInput,
    ExecutionPlan,
    FilterChain,
    Stage,
    StageKind,
)
from timeline_renderer.schemas.timeline import (
    Clip,
    MediaSource,
    OutputSettings,
    Overlay,
    Timeline,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedAsset:
    """A fetched media file plus what the probe found in it."""

    path: str
    has_video: bool = True
    has_audio: bool = True
    duration_s: float | None = None


# filter -> (min, max, default)
FILTER_RANGES: dict[str, tuple[float, float, float]] = {
    "brightness": (-1.0, 1.0, 0.0),
    "contrast": (0.0, 4.0, 1.0),
    "saturation": (0.0, 3.0, 1.0),
    "hue": (-360.0, 360.0, 0.0),
    "blur": (0.0, 100.0, 2.0),
    "sharpen": (0.0, 5.0, 1.0),
}
FLAG_FILTERS = frozenset({"invert", "grayscale"})
EQ_ORDER = ("brightness", "contrast", "saturation")

MAX_SPEED = 100.0
MAX_VOLUME = 10.0
MAX_FPS = 120

_COLOR_RE = re.compile(r"^([A-Za-z]+|#[0-9A-Fa-f]{6}([0-9A-Fa-f]{2})?|0x[0-9A-Fa-f]{6}([0-9A-Fa-f]{2})?)$")
_BITRATE_RE = re.compile(r"^\d+(\.\d+)?[kKmM]?$")


def format_number(value: float) -> str:
    """Render a number the same way every time: no exponent, no trailing zeros."""
    text = f"{value:.6f}".rstrip("0").rstrip(".")
    return "0" if text in ("", "-0") else text


def atempo_factors(speed: float) -> list[float]:
    """Split a tempo change into atempo steps, each within [0.5, 2.0]."""
    factors: list[float] = []
    while speed > 2.0:
        factors.append(2.0)
        speed /= 2.0
    while speed < 0.5:
        factors.append(0.5)
        speed /= 0.5
    if not math.isclose(speed, 1.0):
        factors.append(speed)
    return factors


def _escape_option_value(value: str) -> str:
    """Escape a filter option value for use inside -filter_complex.

    The option parser unescapes backslash, quote and colon; the graph parser
    then unescapes backslash, quote and the chain delimiters. The result is
    left unquoted.
    """
    value = value.replace("\\", "\\\\").replace("'", "\\'").replace(":", "\\:")
    return re.sub(r"([\\'\[\],;])", r"\\\1", value)


def _escape_drawtext(text: str) -> str:
    return _escape_option_value(text.replace("\n", " "))


def _ffmpeg_color(color: str) -> str:
    return color.replace("#", "0x")


def _enable_expr(start: float, end: float | None) -> str | None:
    """Overlay window [start, end) as an FFmpeg enable expression."""
    if end is None:
        return None if start == 0 else f"gte(t,{format_number(start)})"
    return f"gte(t,{format_number(start)})*lt(t,{format_number(end)})"


def _finite(value: float | None) -> bool:
    return value is not None and math.isfinite(value)


@dataclass
class _ClipTiming:
    start: float
    end: float
    speed: float

    @property
    def duration(self) -> float:
        """Length of the clip on the output timeline."""
        return (self.end - self.start) / self.speed


@dataclass
class _PlanBuilder:
    inputs: list[EngineInput] = field(default_factory=list)
    stages: list[Stage] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def add_input(self, path: str) -> int:
        self.inputs.append(EngineInput(path=path))
        return len(self.inputs) - 1


class TimelineCompiler:
    """Lowers timelines into execution plans.

    The compiler is pure: same timeline and assets in, equal plan out. It
    never touches the filesystem or the engine.
    """

    def __init__(self, defaults: RenderDefaults | None = None, font_file: str | None = None):
        self.defaults = defaults or RenderDefaults()
        self.font_file = font_file

    # ========================================================================
    # Validation
    # ========================================================================

    def validate(self, timeline: Timeline) -> None:
        """Check everything that can be checked without the fetched assets.

        Raises:
            CompileError: EmptyTimeline, InvalidTrim or InvalidParameter
        """
        if not timeline.clips:
            raise EmptyTimelineError()
        for index, clip in enumerate(timeline.clips):
            self._validate_clip(clip, f"clips[{index}]")
        for index, clip in enumerate(timeline.soundtrack):
            self._validate_clip(clip, f"soundtrack[{index}]")
            if clip.overlays:
                raise InvalidParameterError(
                    "Soundtrack clips take no overlays", field=f"soundtrack[{index}].overlays"
                )
        self._validate_settings(timeline.settings)

    def _validate_clip(self, clip: Clip, where: str) -> None:
        if clip.trim is not None:
            trim = clip.trim
            if not _finite(trim.start) or trim.start < 0:
                raise InvalidTrimError(f"Trim start must be >= 0, got {trim.start}", field=f"{where}.trim.start")
            if trim.end is not None:
                if not _finite(trim.end) or trim.end <= trim.start:
                    raise InvalidTrimError(start=trim.start, end=trim.end, field=f"{where}.trim.end")
            if trim.duration is not None:
                if not _finite(trim.duration) or trim.duration <= 0:
                    raise InvalidTrimError(
                        f"Trim duration must be > 0, got {trim.duration}", field=f"{where}.trim.duration"
                    )
                if trim.end is not None and not math.isclose(trim.start + trim.duration, trim.end, abs_tol=1e-6):
                    raise InvalidTrimError(
                        "Trim end and duration disagree", field=f"{where}.trim"
                    )

        if not _finite(clip.speed) or clip.speed <= 0 or clip.speed > MAX_SPEED:
            raise InvalidParameterError(field=f"{where}.speed", value=clip.speed, min_value=0, max_value=MAX_SPEED)
        if not _finite(clip.audio_volume) or not 0 <= clip.audio_volume <= MAX_VOLUME:
            raise InvalidParameterError(
                field=f"{where}.audioVolume", value=clip.audio_volume, min_value=0, max_value=MAX_VOLUME
            )

        if clip.media_type == "audio" and (clip.visual_filters or clip.crop or clip.scale):
            raise InvalidParameterError(
                "Audio clips take no visual filters, crop or scale", field=f"{where}.mediaType"
            )

        seen: set[str] = set()
        for index, vf in enumerate(clip.visual_filters):
            name = f"{where}.visualFilters[{index}]"
            if vf.type in seen:
                raise InvalidParameterError(f"Filter '{vf.type}' given more than once", field=name)
            seen.add(vf.type)
            if vf.value is None:
                continue
            if not math.isfinite(vf.value):
                raise InvalidParameterError(field=name, value=vf.value)
            if vf.type in FILTER_RANGES:
                low, high, _ = FILTER_RANGES[vf.type]
                if not low <= vf.value <= high:
                    raise InvalidParameterError(field=name, value=vf.value, min_value=low, max_value=high)

        if clip.crop is not None:
            crop = clip.crop
            if crop.width <= 0 or crop.height <= 0 or crop.x < 0 or crop.y < 0:
                raise InvalidParameterError(
                    f"Crop needs positive size and non-negative offset, got {crop.width}x{crop.height}+{crop.x}+{crop.y}",
                    field=f"{where}.crop",
                )
        if clip.scale is not None:
            for side in (clip.scale.width, clip.scale.height):
                if side is not None and side <= 0:
                    raise InvalidParameterError(field=f"{where}.scale", value=side)

        for index, overlay in enumerate(clip.overlays):
            self._validate_overlay(overlay, f"{where}.overlays[{index}]")

    def _validate_overlay(self, overlay: Overlay, where: str) -> None:
        if not _finite(overlay.start) or overlay.start < 0:
            raise InvalidParameterError(field=f"{where}.start", value=overlay.start)
        if overlay.end is not None and (not _finite(overlay.end) or overlay.end <= overlay.start):
            raise InvalidParameterError(
                f"Overlay window [{overlay.start}, {overlay.end}) is empty", field=f"{where}.end"
            )
        style = overlay.style
        if style.font_size <= 0:
            raise InvalidParameterError(field=f"{where}.style.fontSize", value=style.font_size)
        if not _finite(style.opacity) or not 0 <= style.opacity <= 1:
            raise InvalidParameterError(
                field=f"{where}.style.opacity", value=style.opacity, min_value=0, max_value=1
            )
        if style.width is not None and style.width <= 0:
            raise InvalidParameterError(field=f"{where}.style.width", value=style.width)
        for name, color in (("color", style.color), ("boxColor", style.box_color)):
            if color is not None and not _COLOR_RE.match(color):
                raise InvalidParameterError(field=f"{where}.style.{name}", value=color)

    def _validate_settings(self, settings: OutputSettings) -> None:
        for name, side in (("width", settings.width), ("height", settings.height)):
            # yuv420p needs even dimensions
            if side is not None and (side <= 0 or side % 2):
                raise InvalidParameterError(
                    f"Output {name} must be a positive even number, got {side}", field=f"settings.{name}"
                )
        if settings.fps is not None and not 0 < settings.fps <= MAX_FPS:
            raise InvalidParameterError(field="settings.fps", value=settings.fps, min_value=1, max_value=MAX_FPS)
        for name, bitrate in (("videoBitrate", settings.video_bitrate), ("audioBitrate", settings.audio_bitrate)):
            if bitrate is not None and not _BITRATE_RE.match(bitrate):
                raise InvalidParameterError(field=f"settings.{name}", value=bitrate)

    # ========================================================================
    # Compilation
    # ========================================================================

    def compile(
        self,
        timeline: Timeline,
        assets: Mapping[str, ResolvedAsset | str],
    ) -> ExecutionPlan:
        """Lower a timeline into an execution plan.

        Args:
            timeline: Parsed render request
            assets: Fetched assets keyed by ``MediaSource.key``; plain paths
                are taken as files with both audio and video streams

        Returns:
            ExecutionPlan whose last stage maps [outv] and [outa]

        Raises:
            CompileError: Any validation failure, before a plan exists
        """
        self.validate(timeline)
        resolved = self._resolve_assets(timeline, assets)

        out = self._output(timeline.settings)
        builder = _PlanBuilder()
        video_labels: list[str] = []
        audio_labels: list[str] = []
        total_duration = 0.0

        for index, clip in enumerate(timeline.clips):
            stage, timing = self._clip_stage(index, clip, resolved, out, builder)
            builder.stages.append(stage)
            video_labels.append(f"v{index}")
            audio_labels.append(f"a{index}")
            total_duration += timing.duration

        soundtrack_labels: list[str] = []
        for index, clip in enumerate(timeline.soundtrack):
            builder.stages.append(self._soundtrack_stage(index, clip, resolved, out, builder))
            soundtrack_labels.append(f"s{index}")

        program_audio = "program_a" if soundtrack_labels else "outa"
        count = len(timeline.clips)
        if count > 1:
            builder.stages.append(
                Stage(
                    kind=StageKind.CONCAT,
                    name="concat",
                    chains=(
                        FilterChain(tuple(video_labels), (f"concat=n={count}:v=1:a=0",), "outv"),
                        FilterChain(tuple(audio_labels), (f"concat=n={count}:v=0:a=1",), program_audio),
                    ),
                )
            )
        else:
            # A one-input concat is rejected by some FFmpeg builds; pass through instead
            builder.stages.append(
                Stage(
                    kind=StageKind.COPY,
                    name="copy",
                    chains=(
                        FilterChain((video_labels[0],), ("null",), "outv"),
                        FilterChain((audio_labels[0],), ("anull",), program_audio),
                    ),
                )
            )

        if soundtrack_labels:
            inputs = (program_audio, *soundtrack_labels)
            builder.stages.append(
                Stage(
                    kind=StageKind.MIX,
                    name="mix",
                    chains=(
                        FilterChain(
                            inputs,
                            (f"amix=inputs={len(inputs)}:duration=first:dropout_transition=0:normalize=0",),
                            "outa",
                        ),
                    ),
                )
            )

        builder.stages.append(self._encode_stage(out))

        plan = ExecutionPlan(
            inputs=tuple(builder.inputs),
            stages=tuple(builder.stages),
            duration_s=round(total_duration, 6),
            warnings=tuple(builder.warnings),
        )
        plan.check_labels()
        logger.info(
            f"[COMPILE] {count} clip(s), {len(soundtrack_labels)} soundtrack item(s), "
            f"{len(plan.inputs)} input(s), {len(plan.stages)} stage(s), duration={plan.duration_s}s"
        )
        return plan

    def _resolve_assets(
        self, timeline: Timeline, assets: Mapping[str, ResolvedAsset | str]
    ) -> dict[str, ResolvedAsset]:
        resolved: dict[str, ResolvedAsset] = {}

        def need(source: MediaSource, where: str) -> None:
            asset = assets.get(source.key)
            if asset is None:
                raise MissingAssetError(str(source), field=where)
            resolved[source.key] = ResolvedAsset(path=asset) if isinstance(asset, str) else asset

        for group, clips in (("clips", timeline.clips), ("soundtrack", timeline.soundtrack)):
            for index, clip in enumerate(clips):
                need(clip.source, f"{group}[{index}].source")
                for o_index, overlay in enumerate(clip.overlays):
                    if overlay.source is not None:
                        need(overlay.source, f"{group}[{index}].overlays[{o_index}].source")
        return resolved

    def _output(self, settings: OutputSettings) -> RenderDefaults:
        """Fill unset output settings from the defaults."""
        d = self.defaults
        return RenderDefaults(
            width=settings.width or d.width,
            height=settings.height or d.height,
            fps=settings.fps or d.fps,
            video_bitrate=settings.video_bitrate or d.video_bitrate,
            audio_bitrate=settings.audio_bitrate or d.audio_bitrate,
            sample_rate=d.sample_rate,
            fallback_clip_duration_s=d.fallback_clip_duration_s,
            video_codec=d.video_codec,
            audio_codec=d.audio_codec,
            preset=d.preset,
        )

    def _timing(self, clip: Clip, asset: ResolvedAsset, where: str, builder: _PlanBuilder) -> _ClipTiming:
        start = clip.trim.start if clip.trim else 0.0
        end: float | None = None
        if clip.trim is not None:
            if clip.trim.end is not None:
                end = clip.trim.end
            elif clip.trim.duration is not None:
                end = start + clip.trim.duration

        if asset.duration_s is not None:
            if start >= asset.duration_s:
                raise InvalidTrimError(
                    f"Trim start {start}s is past the end of the asset ({asset.duration_s}s)",
                    field=f"{where}.trim.start",
                )
            end = asset.duration_s if end is None else min(end, asset.duration_s)
        elif end is None:
            end = start + self.defaults.fallback_clip_duration_s
            builder.warnings.append(
                f"{where}: duration unknown, using {format_number(self.defaults.fallback_clip_duration_s)}s"
            )
        return _ClipTiming(start=start, end=end, speed=clip.speed)

    # ------------------------------------------------------------------------
    # Per-clip stage
    # ------------------------------------------------------------------------

    def _clip_stage(
        self,
        index: int,
        clip: Clip,
        resolved: dict[str, ResolvedAsset],
        out: RenderDefaults,
        builder: _PlanBuilder,
    ) -> tuple[Stage, _ClipTiming]:
        where = f"clips[{index}]"
        asset = resolved[clip.source.key]
        timing = self._timing(clip, asset, where, builder)
        input_idx = builder.add_input(asset.path)

        if clip.media_type == "video" and asset.has_video:
            video_in: tuple[str, ...] = (f"{input_idx}:v",)
            filters = self._video_filters(clip, timing) + self._canvas_filters(out)
        else:
            if clip.media_type == "video":
                builder.warnings.append(f"{where}: source has no video stream, using a black frame")
            video_in = ()
            filters = [
                f"color=c=black:s={out.width}x{out.height}:r={out.fps}:d={format_number(timing.duration)}",
                "setsar=1",
                "format=yuv420p",
            ]

        chains = self._overlay_chains(index, clip, video_in, filters, resolved, builder)
        chains.append(self._audio_chain(index, clip, asset, timing, input_idx, out))
        return Stage(kind=StageKind.CLIP, name=f"clip{index}", chains=tuple(chains)), timing

    def _video_filters(self, clip: Clip, timing: _ClipTiming) -> list[str]:
        filters = [
            f"trim=start={format_number(timing.start)}:end={format_number(timing.end)}",
            "setpts=PTS-STARTPTS",
        ]
        if clip.speed != 1.0:
            filters.append(f"setpts=PTS/{format_number(clip.speed)}")

        values = {
            vf.type: (vf.value if vf.value is not None else FILTER_RANGES.get(vf.type, (0, 0, 0))[2])
            for vf in clip.visual_filters
        }
        eq = [f"{name}={format_number(values[name])}" for name in EQ_ORDER if name in values]
        if eq:
            filters.append("eq=" + ":".join(eq))
        if "hue" in values:
            filters.append(f"hue=h={format_number(values['hue'])}")
        if "blur" in values and values["blur"] > 0:
            filters.append(f"gblur=sigma={format_number(values['blur'])}")
        if "sharpen" in values and values["sharpen"] > 0:
            filters.append(f"unsharp=5:5:{format_number(values['sharpen'])}")
        if "invert" in values:
            filters.append("negate")
        if "grayscale" in values:
            filters.append("hue=s=0")

        if clip.crop is not None:
            c = clip.crop
            filters.append(f"crop={c.width}:{c.height}:{c.x}:{c.y}")
        if clip.scale is not None:
            width = clip.scale.width if clip.scale.width is not None else -2
            height = clip.scale.height if clip.scale.height is not None else -2
            filters.append(f"scale={width}:{height}")
        return filters

    def _canvas_filters(self, out: RenderDefaults) -> list[str]:
        """Letterbox into the output canvas so every clip concatenates cleanly."""
        w, h = out.width, out.height
        return [
            f"scale={w}:{h}:force_original_aspect_ratio=decrease",
            f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2:color=black",
            "setsar=1",
            f"fps={out.fps}",
            "format=yuv420p",
        ]

    def _overlay_chains(
        self,
        index: int,
        clip: Clip,
        video_in: tuple[str, ...],
        filters: list[str],
        resolved: dict[str, ResolvedAsset],
        builder: _PlanBuilder,
    ) -> list[FilterChain]:
        """Append overlays in order; image overlays split the chain at an overlay filter."""
        chains: list[FilterChain] = []
        current_in = video_in
        current = list(filters)
        for o_index, overlay in enumerate(clip.overlays):
            enable = _enable_expr(overlay.start, overlay.end)
            if overlay.type == "text":
                current.append(self._drawtext(overlay, enable))
                continue

            base_label = f"c{index}o{o_index}"
            image_label = f"img{index}o{o_index}"
            chains.append(FilterChain(current_in, tuple(current) or ("null",), base_label))

            image_idx = builder.add_input(resolved[overlay.source.key].path)
            image_filters = []
            if overlay.style.width is not None:
                image_filters.append(f"scale={overlay.style.width}:-1")
            image_filters.append("format=rgba")
            if overlay.style.opacity < 1:
                image_filters.append(f"colorchannelmixer=aa={format_number(overlay.style.opacity)}")
            chains.append(FilterChain((f"{image_idx}:v",), tuple(image_filters), image_label))

            x = str(overlay.x) if overlay.x is not None else "(main_w-overlay_w)/2"
            y = str(overlay.y) if overlay.y is not None else "(main_h-overlay_h)/2"
            params = f"overlay=x={x}:y={y}"
            if enable:
                params += f":enable='{enable}'"
            current_in = (base_label, image_label)
            current = [params]

        chains.append(FilterChain(current_in, tuple(current) or ("null",), f"v{index}"))
        return chains

    def _drawtext(self, overlay: Overlay, enable: str | None) -> str:
        style = overlay.style
        color = _ffmpeg_color(style.color)
        if style.opacity < 1:
            color = f"{color}@{format_number(style.opacity)}"
        x = str(overlay.x) if overlay.x is not None else "(w-text_w)/2"
        y = str(overlay.y) if overlay.y is not None else "(h-text_h)/2"

        params = [f"text={_escape_drawtext(overlay.text or '')}", "expansion=none"]
        if self.font_file:
            params.append(f"fontfile={_escape_option_value(self.font_file)}")
        params.extend([f"fontsize={style.font_size}", f"fontcolor={color}", f"x={x}", f"y={y}"])
        if style.box_color:
            params.extend(["box=1", f"boxcolor={_ffmpeg_color(style.box_color)}", "boxborderw=10"])
        if enable:
            params.append(f"enable='{enable}'")
        return "drawtext=" + ":".join(params)

    def _audio_filters(self, clip: Clip, start: float, end: float | None, out: RenderDefaults) -> list[str]:
        trim = f"atrim=start={format_number(start)}"
        if end is not None:
            trim += f":end={format_number(end)}"
        filters = [trim, "asetpts=PTS-STARTPTS"]
        filters.extend(f"atempo={format_number(f)}" for f in atempo_factors(clip.speed))
        if clip.audio_volume != 1.0:
            filters.append(f"volume={format_number(clip.audio_volume)}")
        filters.append(self._aformat(out))
        return filters

    def _aformat(self, out: RenderDefaults) -> str:
        return f"aformat=sample_fmts=fltp:sample_rates={out.sample_rate}:channel_layouts=stereo"

    def _audio_chain(
        self,
        index: int,
        clip: Clip,
        asset: ResolvedAsset,
        timing: _ClipTiming,
        input_idx: int,
        out: RenderDefaults,
    ) -> FilterChain:
        duration = format_number(timing.duration)
        if asset.has_audio:
            filters = self._audio_filters(clip, timing.start, timing.end, out)
            # Audio shorter than the video would shift every later clip in the concat
            filters.extend([f"apad=whole_dur={duration}", f"atrim=duration={duration}"])
            return FilterChain((f"{input_idx}:a",), tuple(filters), f"a{index}")
        return FilterChain(
            (),
            (
                f"anullsrc=channel_layout=stereo:sample_rate={out.sample_rate}",
                f"atrim=duration={duration}",
                self._aformat(out),
            ),
            f"a{index}",
        )

    def _soundtrack_stage(
        self,
        index: int,
        clip: Clip,
        resolved: dict[str, ResolvedAsset],
        out: RenderDefaults,
        builder: _PlanBuilder,
    ) -> Stage:
        where = f"soundtrack[{index}]"
        asset = resolved[clip.source.key]
        if not asset.has_audio:
            raise InvalidParameterError("Soundtrack source has no audio stream", field=f"{where}.source")
        start = clip.trim.start if clip.trim else 0.0
        end = None
        if clip.trim is not None:
            if clip.trim.end is not None:
                end = clip.trim.end
            elif clip.trim.duration is not None:
                end = start + clip.trim.duration
        input_idx = builder.add_input(asset.path)
        chain = FilterChain((f"{input_idx}:a",), tuple(self._audio_filters(clip, start, end, out)), f"s{index}")
        return Stage(kind=StageKind.SOUNDTRACK, name=f"soundtrack{index}", chains=(chain,))

    def _encode_stage(self, out: RenderDefaults) -> Stage:
        return Stage(
            kind=StageKind.ENCODE,
            name="encode",
            maps=("outv", "outa"),
            options=(
                "-c:v", out.video_codec,
                "-preset", out.preset,
                "-b:v", out.video_bitrate,
                "-r", str(out.fps),
                "-pix_fmt", "yuv420p",
                "-c:a", out.audio_codec,
                "-b:a", out.audio_bitrate,
                "-ar", str(out.sample_rate),
                "-movflags", "+faststart",
            ),
        )
