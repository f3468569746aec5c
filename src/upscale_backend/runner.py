"""
Asynchronous driver for the external upscaling executable.

The runner spawns ``realesrgan-ncnn-vulkan`` (or a compatible tool), drains
its standard output line by line as it is produced, and collects the exit
status. Nothing here blocks the event loop: spawning, reading and waiting
are all awaited, so many jobs can run side by side.

Failures are never raised to the caller. They are recorded on the returned
``RunOutcome`` and turned into a job status by ``classifier.classify``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Set

from .errors import SpawnError, StreamReadError, WaitError

logger = logging.getLogger(__name__)

# Called with (job_id, line) for every line the executable prints
LineSink = Callable[[str, str], None]

DISCARD_CHUNK_SIZE = 64 * 1024


def log_line(job_id: str, line: str) -> None:
    logger.info(f"Upscaling process output [{job_id}]: {line}")


@dataclass
class RunOutcome:
    """
    Everything the runner observed about one execution.

    Attributes:
        pid: Child process id, None if spawning failed
        exit_code: Exit status, None if it was not collected
        lines: Number of output lines forwarded to the sink
        short_circuited: True when the artifact was already on disk after
            output ended and the exit wait was skipped
        spawn_error: Set when the executable could not be started
        stream_error: Set when the output pipe could not be read
        wait_error: Set when collecting the exit status failed
    """

    pid: Optional[int] = None
    exit_code: Optional[int] = None
    lines: int = 0
    short_circuited: bool = False
    spawn_error: Optional[SpawnError] = None
    stream_error: Optional[StreamReadError] = None
    wait_error: Optional[WaitError] = None

    @property
    def exited(self) -> bool:
        return self.exit_code is not None


class ProcessRunner:
    """
    Spawns the upscaler with a fixed positional argument list.

    Attributes:
        executable: Path to the upscaler binary
        gpu_index: Value passed with ``-g``
        scale: Value passed with ``-s``
        merge_stderr: Route the child's stderr into the drained stdout pipe
    """

    def __init__(
        self,
        executable: str,
        gpu_index: int = 0,
        scale: int = 2,
        merge_stderr: bool = False,
        sink: LineSink = log_line,
    ) -> None:
        self.executable = executable
        self.gpu_index = gpu_index
        self.scale = scale
        self.merge_stderr = merge_stderr
        self._sink = sink
        self._reapers: Set[asyncio.Task] = set()

    def build_args(self, input_path: Path, output_path: Path) -> List[str]:
        return [
            self.executable,
            "-i",
            str(input_path),
            "-o",
            str(output_path),
            "-g",
            str(self.gpu_index),
            "-s",
            str(self.scale),
        ]

    async def run(self, input_path: Path, output_path: Path, job_id: str = "-") -> RunOutcome:
        """
        Execute the upscaler for one job.

        The exit-status wait is skipped when the output artifact already
        exists once stdout has closed; the artifact is the authoritative
        success signal and the child is reaped in the background.
        """
        args = self.build_args(input_path, output_path)
        logger.info(f"Starting upscaling process for {job_id}: {' '.join(args)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT if self.merge_stderr else None,
            )
        except OSError as exc:
            error = SpawnError.from_os_error(self.executable, exc)
            logger.error(f"Error running upscaling process for {job_id}: {error.message}")
            if error.reason == SpawnError.EXEC_FORMAT:
                logger.error("Exec format error: the binary may not match this platform.")
            return RunOutcome(spawn_error=error)

        outcome = RunOutcome(pid=process.pid)
        try:
            outcome.lines = await self._drain(process.stdout, job_id)
        except StreamReadError as exc:
            logger.error(f"Reading upscaler output for {job_id} failed: {exc.message}")
            outcome.stream_error = exc
            await self._discard_output(process, job_id)

        if output_path.exists():
            logger.info(f"Artifact for {job_id} present at {output_path}; not waiting for exit status")
            outcome.short_circuited = True
            self._reap_in_background(process, job_id)
            return outcome

        try:
            outcome.exit_code = await process.wait()
        except OSError as exc:
            outcome.wait_error = WaitError(f"Could not collect exit status of pid {process.pid}: {exc}")
            logger.error(f"Waiting on upscaler for {job_id} failed: {exc}")
        else:
            logger.info(f"Upscaler for {job_id} exited with status {outcome.exit_code}")
        return outcome

    async def _drain(self, stream: Optional[asyncio.StreamReader], job_id: str) -> int:
        if stream is None:
            raise StreamReadError("Child process has no stdout pipe")

        count = 0
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # readline discards an over-long line before raising, keep draining
                logger.warning(f"Upscaler output line for {job_id} exceeded the buffer limit; dropped")
                continue
            except OSError as exc:
                raise StreamReadError(f"Reading upscaler output failed: {exc}") from exc
            if not raw:
                return count
            count += 1
            self._sink(job_id, raw.decode(errors="replace").rstrip("\r\n"))

    async def _discard_output(self, process: asyncio.subprocess.Process, job_id: str) -> None:
        """
        Keep the child's stdout pipe from filling up after line reading failed.

        Remaining output is read and thrown away. If the pipe cannot be read
        at all, its read end is closed so the child gets EPIPE instead of
        blocking on a full pipe.
        """
        stream = process.stdout
        if stream is not None:
            try:
                while await stream.read(DISCARD_CHUNK_SIZE):
                    pass
                return
            except OSError as exc:
                logger.warning(f"Discarding upscaler output for {job_id} failed: {exc}; closing the pipe")

        transport = getattr(process, "_transport", None)
        pipe = transport.get_pipe_transport(1) if transport is not None else None
        if pipe is not None:
            pipe.close()

    def _reap_in_background(self, process: asyncio.subprocess.Process, job_id: str) -> None:
        task = asyncio.ensure_future(self._reap(process, job_id))
        self._reapers.add(task)
        task.add_done_callback(self._reapers.discard)

    async def _reap(self, process: asyncio.subprocess.Process, job_id: str) -> None:
        try:
            code = await process.wait()
        except OSError as exc:
            logger.warning(f"Could not reap upscaler for {job_id}: {exc}")
            return
        logger.debug(f"Upscaler for {job_id} exited with status {code} after its artifact was confirmed")

    async def wait_for_reapers(self) -> None:
        """Wait until every background reap has finished."""
        if self._reapers:
            await asyncio.gather(*list(self._reapers), return_exceptions=True)
