from timeline_renderer.render.compiler import ResolvedAsset, TimelineCompiler
from timeline_renderer.render.engine import EngineInvoker, EngineResult
from timeline_renderer.render.plan import EngineInput, ExecutionPlan, FilterChain, Stage, StageKind

__all__ = [
    "EngineInput",
    "EngineInvoker",
    "EngineResult",
    "ExecutionPlan",
    "FilterChain",
    "ResolvedAsset",
    "Stage",
    "StageKind",
    "TimelineCompiler",
]
