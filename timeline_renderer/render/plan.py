"""Typed execution plan produced by the timeline compiler.

A plan is an ordered list of stages. Each stage holds filter chains that
consume and produce labelled streams. The FFmpeg argument list is derived
from the plan only at the very end (``to_ffmpeg_args``), so the plan can be
inspected and tested without the engine.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from timeline_renderer.exceptions import CompileError

_STREAM_LABEL = re.compile(r"^(\d+):([va])$")


class StageKind(str, Enum):
    """Kinds of plan stages, in the order they appear in a plan."""

    CLIP = "clip"
    SOUNDTRACK = "soundtrack"
    CONCAT = "concat"
    COPY = "copy"
    MIX = "mix"
    ENCODE = "encode"


@dataclass(frozen=True)
class EngineInput:
    """One ``-i`` input of the engine invocation."""

    path: str
    options: tuple[str, ...] = ()

    def to_args(self) -> list[str]:
        return [*self.options, "-i", self.path]


@dataclass(frozen=True)
class FilterChain:
    """``[in1][in2]filter1,filter2[out]``; source chains have no inputs."""

    inputs: tuple[str, ...]
    filters: tuple[str, ...]
    output: str

    def render(self) -> str:
        ins = "".join(f"[{label}]" for label in self.inputs)
        return f"{ins}{','.join(self.filters)}[{self.output}]"


@dataclass(frozen=True)
class Stage:
    kind: StageKind
    name: str
    chains: tuple[FilterChain, ...] = ()
    # Encode stage only: labels mapped to the output and output options
    maps: tuple[str, ...] = ()
    options: tuple[str, ...] = ()

    @property
    def inputs(self) -> tuple[str, ...]:
        """Labels this stage consumes from earlier stages or engine inputs."""
        if self.kind is StageKind.ENCODE:
            return self.maps
        produced = {chain.output for chain in self.chains}
        consumed: list[str] = []
        for chain in self.chains:
            consumed.extend(label for label in chain.inputs if label not in produced)
        return tuple(consumed)

    @property
    def outputs(self) -> tuple[str, ...]:
        """Labels this stage hands on to later stages."""
        internal = {label for chain in self.chains for label in chain.inputs}
        return tuple(chain.output for chain in self.chains if chain.output not in internal)

    def describe(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind.value,
            "name": self.name,
            "inputs": list(self.inputs),
            "outputs": list(self.outputs),
        }
        if self.chains:
            data["filters"] = [chain.render() for chain in self.chains]
        if self.options:
            data["options"] = list(self.options)
        return data


@dataclass(frozen=True)
class ExecutionPlan:
    """Compiled timeline: engine inputs, ordered stages, output file name."""

    inputs: tuple[EngineInput, ...]
    stages: tuple[Stage, ...]
    output_name: str = "output.mp4"
    duration_s: float = 0.0
    warnings: tuple[str, ...] = field(default=(), compare=False)

    def stages_of(self, kind: StageKind) -> list[Stage]:
        return [stage for stage in self.stages if stage.kind is kind]

    @property
    def encode_stage(self) -> Stage:
        return self.stages_of(StageKind.ENCODE)[0]

    def filter_complex(self) -> str:
        """Join every chain into one FFmpeg filter graph description."""
        return ";\n".join(chain.render() for stage in self.stages for chain in stage.chains)

    def describe(self) -> list[dict[str, Any]]:
        return [stage.describe() for stage in self.stages]

    def check_labels(self) -> None:
        """Verify every label is written once, read once, and produced before use.

        Raises:
            CompileError: If the plan references an unknown or reused label
        """
        produced: set[str] = set()
        consumed: set[str] = set()
        for stage in self.stages:
            if stage.kind is StageKind.ENCODE:
                for label in stage.maps:
                    self._check_read(label, produced, consumed, stage)
                continue
            # Chains inside a stage may feed each other in order
            for chain in stage.chains:
                for label in chain.inputs:
                    self._check_read(label, produced, consumed, stage)
                if chain.output in produced or _STREAM_LABEL.match(chain.output):
                    raise CompileError(f"Label [{chain.output}] written twice in {stage.name}")
                produced.add(chain.output)
        dangling = sorted(produced - consumed)
        if dangling:
            raise CompileError(f"Unconsumed labels in plan: {', '.join(dangling)}")

    def _check_read(self, label: str, produced: set[str], consumed: set[str], stage: Stage) -> None:
        match = _STREAM_LABEL.match(label)
        if match:
            if int(match.group(1)) >= len(self.inputs):
                raise CompileError(f"Stage {stage.name} reads missing input [{label}]")
            return
        if label not in produced:
            raise CompileError(f"Stage {stage.name} reads [{label}] before it is produced")
        if label in consumed:
            raise CompileError(f"Label [{label}] consumed twice (in {stage.name})")
        consumed.add(label)

    def to_ffmpeg_args(
        self,
        ffmpeg_path: str = "ffmpeg",
        extra_output_options: tuple[str, ...] | list[str] = (),
    ) -> list[str]:
        """Serialize the plan into an FFmpeg command line."""
        cmd = [ffmpeg_path, "-y", "-hide_banner", "-nostdin"]
        for engine_input in self.inputs:
            cmd.extend(engine_input.to_args())
        cmd.extend(["-filter_complex", self.filter_complex()])
        encode = self.encode_stage
        for label in encode.maps:
            cmd.extend(["-map", f"[{label}]"])
        cmd.extend(encode.options)
        cmd.extend(extra_output_options)
        cmd.append(self.output_name)
        return cmd
