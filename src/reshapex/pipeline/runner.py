"""Execution of external commands with failure mapping.

Each call blocks until every stage has exited. Run it from a worker thread
(see ``reshapex.pipeline.pool``) when serving requests from the event loop.
"""

from __future__ import annotations

import logging
import subprocess
import tempfile
from typing import IO, TYPE_CHECKING

from reshapex.pipeline.commands import CommandPipeline
from reshapex.pipeline.errors import ProcessFailure

if TYPE_CHECKING:
    from collections.abc import Sequence

logger = logging.getLogger(__name__)

# Conventional shell statuses for commands that cannot be started.
STATUS_NOT_FOUND = 127
STATUS_NOT_EXECUTABLE = 126


class ProcessRunner:
    """Runs command pipelines and returns their stdout lines."""

    def run(self, command: CommandPipeline | Sequence[str]) -> list[str]:
        """Execute ``command`` and return the last stage's stdout lines.

        Args:
            command: A pipeline, or a single argv sequence.

        Returns:
            Captured output lines, possibly empty.

        Raises:
            ProcessFailure: If any stage exits non-zero or cannot be started.
        """
        pipeline = command if isinstance(command, CommandPipeline) else CommandPipeline((tuple(command),))
        rendered = pipeline.render()
        logger.debug("Executing: %s", rendered)

        try:
            status, stdout, stderr = self._communicate(pipeline)
        except FileNotFoundError as exc:
            raise ProcessFailure(STATUS_NOT_FOUND, str(STATUS_NOT_FOUND), rendered, str(exc)) from exc
        except PermissionError as exc:
            raise ProcessFailure(STATUS_NOT_EXECUTABLE, str(STATUS_NOT_EXECUTABLE), rendered, str(exc)) from exc

        lines = stdout.splitlines()
        if status != 0:
            output = "\n".join(lines) if lines else str(status)
            logger.debug("Command exited with %s: %s (stderr: %s)", status, rendered, stderr.strip())
            raise ProcessFailure(status, output, rendered, stderr)
        return lines

    @staticmethod
    def _communicate(pipeline: CommandPipeline) -> tuple[int, str, str]:
        """Start every stage, wire stdout to the next stdin and wait for all of them.

        The returned status is the first non-zero stage status, so a failing
        producer is not masked by a succeeding consumer.
        """
        processes: list[subprocess.Popen[bytes]] = []
        # Only the last stage is drained by communicate(); earlier stages
        # spool stderr to disk so a full pipe can never stall the chain.
        spools: list[IO[bytes]] = []
        upstream: IO[bytes] | None = None
        last_index = len(pipeline.stages) - 1
        try:
            for index, argv in enumerate(pipeline.stages):
                stderr_target: IO[bytes] | int = subprocess.PIPE
                if index < last_index:
                    stderr_target = tempfile.TemporaryFile()
                    spools.append(stderr_target)
                process = subprocess.Popen(
                    argv,
                    stdin=upstream,
                    stdout=subprocess.PIPE,
                    stderr=stderr_target,
                )
                if upstream is not None:
                    # Let the producer see SIGPIPE if the consumer exits early.
                    upstream.close()
                upstream = process.stdout
                processes.append(process)

            stdout, last_stderr = processes[-1].communicate()
            for process in processes[:-1]:
                process.wait()

            errors: list[bytes] = []
            for spool in spools:
                spool.seek(0)
                errors.append(spool.read())
            errors.append(last_stderr or b"")
        finally:
            if upstream is not None:
                upstream.close()
            for process in processes:
                if process.poll() is None:
                    process.kill()
                    process.wait()
            for spool in spools:
                spool.close()

        status = next((p.returncode for p in processes if p.returncode != 0), 0)
        stderr = b"\n".join(err for err in errors if err)
        return status, stdout.decode("utf-8", errors="replace"), stderr.decode("utf-8", errors="replace")
