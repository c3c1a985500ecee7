import asyncio
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class ProcessOutput:
    # stdout and stderr combined, decoded as UTF-8
    output: "str"
    exit_code: "int"


class ProcessRunner(Protocol):
    """
    ProcessRunner executes an external command and captures its
    combined output. Implementations raise FileNotFoundError when
    the program does not exist, OSError for other launch failures,
    and TimeoutError when the command outlives timeout.
    """

    async def run(
        self,
        program: "str",
        args: "Sequence[str]",
        timeout: "float",
    ) -> "ProcessOutput": ...


class DocumentHost(Protocol):
    """
    DocumentHost is an embedded, scriptable browser page that carries
    an authenticated session.

    evaluate() runs a script in the current page and returns its
    JSON-serializable result, raising DocumentHostError on failure.
    navigate() loads a URL. Page lifecycle events are reported to
    the SessionStateMachine by the host itself.
    """

    async def evaluate(self, script: "str") -> "Any": ...

    async def navigate(self, url: "str") -> "None": ...


class DocumentHostError(Exception):
    pass


class AsyncSubprocessRunner:
    """
    AsyncSubprocessRunner runs commands with asyncio subprocesses.
    The child is killed on timeout or cancellation so that no
    process outlives the fetch that started it.
    """

    async def run(
        self,
        program: "str",
        args: "Sequence[str]",
        timeout: "float",
    ) -> "ProcessOutput":
        proc = await asyncio.create_subprocess_exec(
            program,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        logger.debug("subprocess_started", program=program, args=list(args))

        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except (TimeoutError, asyncio.CancelledError):
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        return ProcessOutput(
            output=stdout.decode("utf-8", errors="replace"),
            exit_code=proc.returncode if proc.returncode is not None else -1,
        )
