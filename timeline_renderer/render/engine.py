"""FFmpeg invocation.

Runs one engine process per plan with ``-progress pipe:1`` on stdout for
progress and keeps a bounded tail of stderr for diagnostics.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from timeline_renderer.config import get_settings
from timeline_renderer.exceptions import EngineError
from timeline_renderer.render.plan import ExecutionPlan

logger = logging.getLogger(__name__)

# Exit code reported when the engine binary cannot be started
EXIT_NOT_FOUND = 127
# Lines of stderr carried into the job error message
DIAGNOSTIC_EXCERPT_LINES = 10

ProgressCallback = Callable[[float], None]


@dataclass
class EngineResult:
    returncode: int
    diagnostics: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class EngineInvoker:
    """Runs the engine and reports exit status plus stderr tail."""

    def __init__(
        self,
        ffmpeg_path: str | None = None,
        diagnostic_lines: int | None = None,
        extra_output_options: tuple[str, ...] | None = None,
    ):
        settings = get_settings()
        self.ffmpeg_path = ffmpeg_path or settings.ffmpeg_path
        self.diagnostic_lines = diagnostic_lines or settings.engine_diagnostic_lines
        if extra_output_options is None:
            extra_output_options = (
                "-threads", str(settings.ffmpeg_threads),
                "-max_muxing_queue_size", str(settings.ffmpeg_max_muxing_queue),
            )
        self.extra_output_options = extra_output_options

    def build_args(self, plan: ExecutionPlan) -> list[str]:
        args = plan.to_ffmpeg_args(self.ffmpeg_path, self.extra_output_options)
        # Progress goes to stdout, right before the output file
        args[-1:-1] = ["-progress", "pipe:1"]
        return args

    async def run_plan(
        self,
        plan: ExecutionPlan,
        cwd: str,
        on_progress: ProgressCallback | None = None,
    ) -> EngineResult:
        """Execute a plan inside the job work dir.

        Raises:
            EngineError: If the engine exits non-zero or cannot be started
        """
        args = self.build_args(plan)
        logger.info(f"[ENGINE] Running {len(plan.inputs)} input(s) in {cwd}")
        logger.debug(f"[ENGINE] filter_complex:\n{plan.filter_complex()}")

        def report(out_time_s: float) -> None:
            if on_progress and plan.duration_s > 0:
                on_progress(min(1.0, out_time_s / plan.duration_s))

        result = await self.invoke(args, cwd, report)
        if not result.ok:
            excerpt = "\n".join(result.diagnostics.splitlines()[-DIAGNOSTIC_EXCERPT_LINES:])
            raise EngineError(exit_code=result.returncode, diagnostics=excerpt)
        return result

    async def invoke(
        self,
        args: list[str],
        cwd: str,
        on_time: ProgressCallback | None = None,
    ) -> EngineResult:
        """Run an engine command and wait for it.

        Args:
            args: Full command line, binary first
            cwd: Working directory; relative paths in args resolve against it
            on_time: Called with the encoded output time in seconds

        Returns:
            EngineResult with the exit code and the last stderr lines
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                cwd=cwd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            logger.error(f"[ENGINE] Cannot start {args[0]}: {e}")
            return EngineResult(returncode=EXIT_NOT_FOUND, diagnostics=str(e))

        tail: deque[str] = deque(maxlen=self.diagnostic_lines)

        async def read_stderr() -> None:
            async for raw_line in proc.stderr:
                line = raw_line.decode("utf-8", errors="replace").rstrip()
                if line:
                    logger.debug(f"[ENGINE] {line}")
                    tail.append(line)

        async def read_progress() -> None:
            async for raw_line in proc.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if line.startswith("out_time_us=") and on_time:
                    try:
                        on_time(int(line.split("=", 1)[1]) / 1_000_000)
                    except ValueError:
                        pass  # out_time_us=N/A before the first frame

        try:
            await asyncio.gather(read_stderr(), read_progress())
            returncode = await proc.wait()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        diagnostics = "\n".join(tail)
        if returncode != 0:
            logger.error(f"[ENGINE] FFmpeg exited with {returncode}: {diagnostics[-2000:]}")
        else:
            logger.info("[ENGINE] FFmpeg finished")
        return EngineResult(returncode=returncode, diagnostics=diagnostics)
