"""
Cray capmc Power Control

Drives the Cray capmc command to change KNL MCDRAM/NUMA modes, re-initialize
compute nodes, and wait for them to report "on". Every capmc call runs in its own
process group with a hard timeout, and failed calls are classified as success,
retryable (known transient capmc errors) or fatal.
"""

import json
import os
import selectors
import signal
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

import pendulum
from loguru import logger

from nodeset import NodeSet, encode_nodeset

# Maximum time to block on the child's output before re-checking the timeout
MAX_POLL_WAIT_MS = 500

# Delay between SIGTERM and SIGKILL when tearing down a capmc process group
KILL_GRACE_SECONDS = 0.01

# Status reported when capmc could not be started
SPAWN_FAILURE_STATUS = 127

# How long to wait for re-initialized nodes to report "on"
POLL_WINDOW = pendulum.duration(minutes=30)


class CapmcError(Exception):
    """Base class for capmc related errors."""


class FatalControlPlaneError(CapmcError):
    """A capmc operation failed and can not be retried."""

    def __init__(self, operation: str, argv: Sequence[str], result: "CommandResult"):
        self.operation = operation
        self.argv = list(argv)
        self.result = result
        super().__init__(
            f"capmc {operation} failed with status {result.exit_status}: "
            f"{result.text.strip()}"
        )


# ==================== Command Runner ====================


@dataclass(frozen=True)
class CommandResult:
    """Exit status and merged stdout/stderr of one command."""

    exit_status: int
    output: bytes = b""
    timed_out: bool = False

    @property
    def text(self) -> str:
        return self.output.decode("utf-8", errors="replace")


class CaptureBuffer:
    """Append-only byte buffer that doubles its capacity as it fills."""

    INITIAL_SIZE = 1024

    def __init__(self):
        self._data = bytearray(self.INITIAL_SIZE)
        self._length = 0

    @property
    def capacity(self) -> int:
        return len(self._data)

    def append(self, chunk: bytes) -> None:
        end = self._length + len(chunk)
        while end + self.INITIAL_SIZE >= len(self._data):
            self._data.extend(bytes(len(self._data)))
        self._data[self._length:end] = chunk
        self._length = end

    def read_from(self, fd: int) -> int:
        """
        Read whatever is available on fd into the free space of the buffer.

        Returns:
            Number of bytes read, 0 at end of file.
        """
        chunk = os.read(fd, self.capacity - self._length)
        if chunk:
            self.append(chunk)
        return len(chunk)

    def getvalue(self) -> bytes:
        return bytes(self._data[: self._length])

    def __len__(self) -> int:
        return self._length


class ChildProcess:
    """
    Owns one child process and its process group.

    The child is started in its own session with no stdin and stderr merged
    into stdout. Leaving the context sends SIGTERM to the whole group, then
    SIGKILL after a short grace period, and reaps the child. This runs on
    every exit path.

    Raises:
        OSError: If the process can not be created.
    """

    def __init__(self, argv: Sequence[str]):
        self.argv = list(argv)
        self.process = subprocess.Popen(
            self.argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
        self.released = False

    @property
    def pid(self) -> int:
        return self.process.pid

    def __enter__(self) -> "ChildProcess":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> bool:
        self.release()
        return False

    def _signal_group(self, signum: int) -> None:
        try:
            os.killpg(self.process.pid, signum)
        except (ProcessLookupError, PermissionError):
            # Group already gone
            pass

    def release(self) -> None:
        if self.released:
            return
        self.released = True
        self._signal_group(signal.SIGTERM)
        time.sleep(KILL_GRACE_SECONDS)
        self._signal_group(signal.SIGKILL)
        self.process.wait()
        self.process.stdout.close()


class CommandRunner:
    """Runs one external command with merged output and a hard timeout."""

    def run(self, argv: Sequence[str], timeout_ms: int) -> CommandResult:
        """
        Run argv[0] with the given argument vector.

        Args:
            argv: Command and arguments; argv[0] must be a path to an executable
            timeout_ms: Total time the command may run, in milliseconds

        Returns:
            CommandResult with the exit status and captured output. Status 127 is
            returned without spawning anything if the command can not be executed.
        """
        program = argv[0]
        if not os.access(program, os.R_OK | os.X_OK):
            logger.error(f"Can not execute: {program}")
            return CommandResult(
                exit_status=SPAWN_FAILURE_STATUS,
                output=b"Slurm node_features/knl_cray configuration error",
            )

        buffer = CaptureBuffer()
        timed_out = False
        try:
            child = ChildProcess(argv)
        except OSError as e:
            logger.error(f"Failed to start {program}: {e}")
            return CommandResult(exit_status=SPAWN_FAILURE_STATUS, output=b"System error")

        with child:
            fd = child.process.stdout.fileno()
            start = time.monotonic()
            with selectors.DefaultSelector() as selector:
                selector.register(fd, selectors.EVENT_READ)
                while True:
                    remaining_ms = timeout_ms - (time.monotonic() - start) * 1000
                    if remaining_ms <= 0:
                        logger.error(f"{program}: poll() timeout @ {timeout_ms} msec")
                        timed_out = True
                        break
                    wait_ms = min(remaining_ms, MAX_POLL_WAIT_MS)
                    if not selector.select(wait_ms / 1000.0):
                        continue
                    try:
                        if buffer.read_from(fd) == 0:
                            break
                    except BlockingIOError:
                        continue
                    except OSError as e:
                        logger.error(f"{program}: read(): {e}")
                        break

        logger.debug(
            f"{' '.join(argv)} exited with {child.process.returncode} (pid {child.pid})"
        )
        return CommandResult(
            exit_status=child.process.returncode,
            output=buffer.getvalue(),
            timed_out=timed_out,
        )


# ==================== Response Classification ====================


class Classification(Enum):
    """Outcome of a capmc call."""

    SUCCESS = "success"
    RETRYABLE = "retryable"  # Known transient capmc failure, retry budget left
    FATAL = "fatal"


# (operation, pattern) pairs that mark a failed capmc call as transient.
# "*" matches every operation. Patterns are case-sensitive substrings of the output.
TRANSIENT_PATTERNS: Tuple[Tuple[str, str], ...] = (
    ("*", "Could not lookup"),  # State Manager is down
    ("node_reinit", "Internal server error"),
)


def transient_patterns_for(operation: str) -> List[str]:
    return [
        pattern
        for op, pattern in TRANSIENT_PATTERNS
        if op == "*" or op == operation
    ]


def classify_response(
    result: CommandResult, operation: str, attempt: int, max_retries: int
) -> Classification:
    """
    Classify the result of a capmc call.

    capmc sometimes exits non-zero while reporting success, so a "success"
    marker anywhere in the output (any case) counts as success.

    Args:
        result: Result of the capmc call
        operation: capmc sub-command, e.g. "node_reinit"
        attempt: 1-based number of the attempt that produced result
        max_retries: Retries allowed after the first attempt

    Returns:
        Classification of the call.
    """
    if result.exit_status == 0 or "success" in result.text.lower():
        return Classification.SUCCESS

    text = result.text
    if any(pattern in text for pattern in transient_patterns_for(operation)):
        if attempt <= max_retries:
            return Classification.RETRYABLE
        logger.warning(f"capmc {operation}: retry budget of {max_retries} exhausted")

    return Classification.FATAL


# ==================== Power Controller ====================

NUMA_MODES = ("a2a", "hemi", "quad", "snc2", "snc4")
MCDRAM_MODES = ("cache", "split", "equal", "flat")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 4
    backoff_seconds: int = 1


@dataclass(frozen=True)
class PowerConfig:
    """KNL modes to apply before rebooting nodes."""

    mcdram_mode: Optional[str] = None
    numa_mode: Optional[str] = None

    @classmethod
    def from_features(cls, features: Optional[str]) -> "PowerConfig":
        """
        Build a PowerConfig from a comma separated feature list such as "quad,cache".

        Unknown tokens are ignored; the last token for a mode wins.
        """
        mcdram_mode = None
        numa_mode = None
        for token in (features or "").split(","):
            token = token.strip()
            if token.lower() in NUMA_MODES:
                numa_mode = token
            elif token.lower() in MCDRAM_MODES:
                mcdram_mode = token
            elif token:
                logger.debug(f"Ignoring feature '{token}'")
        return cls(mcdram_mode=mcdram_mode, numa_mode=numa_mode)

    @property
    def is_empty(self) -> bool:
        return self.mcdram_mode is None and self.numa_mode is None


class PowerController:
    """Issues mode changes and node re-initialization through capmc."""

    def __init__(
        self,
        capmc_path: str,
        runner: CommandRunner,
        timeout_ms: int,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.capmc_path = capmc_path
        self.runner = runner
        self.timeout_ms = timeout_ms
        self.sleep = sleep

    def apply(
        self, nodes: NodeSet, power_config: PowerConfig, retry_policy: RetryPolicy
    ) -> None:
        """
        Apply modes, then re-initialize the nodes.

        Raises:
            FatalControlPlaneError: If any capmc operation fails.
        """
        self.configure(nodes, power_config, retry_policy)
        self.reboot(nodes, retry_policy)

    def configure(
        self, nodes: NodeSet, power_config: PowerConfig, retry_policy: RetryPolicy
    ) -> None:
        nid_list = encode_nodeset(nodes)
        if power_config.mcdram_mode:
            # e.g. "capmc set_mcdram_cfg -m cache -n 43"
            self._run_with_retry(
                ["set_mcdram_cfg", "-m", power_config.mcdram_mode, "-n", nid_list],
                retry_policy,
            )
        if power_config.numa_mode:
            # e.g. "capmc set_numa_cfg -m a2a -n 43"
            self._run_with_retry(
                ["set_numa_cfg", "-m", power_config.numa_mode, "-n", nid_list],
                retry_policy,
            )

    def reboot(self, nodes: NodeSet, retry_policy: RetryPolicy) -> None:
        # e.g. "capmc node_reinit -n 43"
        self._run_with_retry(["node_reinit", "-n", encode_nodeset(nodes)], retry_policy)

    def _run_with_retry(self, args: List[str], retry_policy: RetryPolicy) -> None:
        """
        Run one capmc operation until it succeeds or fails for good.

        Raises:
            FatalControlPlaneError: On a fatal response or once retries run out.
        """
        operation = args[0]
        argv = [self.capmc_path] + args
        attempt = 0
        while True:
            attempt += 1
            result = self.runner.run(argv, self.timeout_ms)
            classification = classify_response(
                result, operation, attempt, retry_policy.max_retries
            )
            if classification == Classification.SUCCESS:
                logger.debug(f"{operation} sent to {args[-1]}")
                return

            logger.error(
                f"capmc({','.join(args)}): {result.exit_status} {result.text.strip()}"
            )
            if classification == Classification.RETRYABLE:
                logger.info(
                    f"Retrying capmc {operation} in {retry_policy.backoff_seconds}s "
                    f"(attempt {attempt}/{retry_policy.max_retries + 1})"
                )
                self.sleep(retry_policy.backoff_seconds)
                continue

            raise FatalControlPlaneError(operation, argv, result)


# ==================== Convergence Poller ====================


def parse_on_nids(document: str) -> List[int]:
    """
    Extract the nids listed under "on" in a capmc node_status document.

    Raises:
        ValueError: If the document is not valid JSON.
    """
    status = json.loads(document)
    if not isinstance(status, dict) or "on" not in status:
        logger.debug("key=on not found in nid specification")
        return []

    entries = status["on"]
    if not isinstance(entries, list):
        logger.error("Unable to parse nid specification")
        return []

    nids = []
    for entry in entries:
        if isinstance(entry, bool) or not isinstance(entry, int):
            logger.error("Unable to parse nid specification")
            break
        nids.append(entry)
    return nids


class ConvergencePoller:
    """Polls capmc node_status until every pending node is on."""

    def __init__(
        self,
        capmc_path: str,
        runner: CommandRunner,
        timeout_ms: int,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], pendulum.DateTime] = pendulum.now,
        window: pendulum.Duration = POLL_WINDOW,
    ):
        self.capmc_path = capmc_path
        self.runner = runner
        self.timeout_ms = timeout_ms
        self.sleep = sleep
        self.clock = clock
        self.window = window
        self.polls = 0

    def wait_for_all_on(self, nodes: NodeSet, poll_frequency: int) -> bool:
        """
        Remove nodes from the set as capmc reports them on.

        Args:
            nodes: Pending nodes; modified in place
            poll_frequency: Seconds to sleep before each node_status query

        Returns:
            True if every node came up before the deadline, False otherwise.
        """
        deadline = self.clock() + self.window
        argv = [self.capmc_path, "node_status"]

        while len(nodes) > 0:
            now = self.clock()
            if now >= deadline:
                logger.warning(
                    f"Gave up after {self.window.in_minutes()} minutes waiting for "
                    f"nodes {encode_nodeset(nodes)} to power on"
                )
                return False

            self.sleep(min(poll_frequency, (deadline - now).total_seconds()))
            self.polls += 1
            result = self.runner.run(argv, self.timeout_ms)
            if result.exit_status != 0:
                logger.error(
                    f"capmc(node_status): {result.exit_status} {result.text.strip()}"
                )
                return False

            try:
                on_nids = parse_on_nids(result.text)
            except ValueError:
                logger.error(f"json parser failed on {result.text.strip()}")
                return False

            for nid in on_nids:
                nodes.discard(nid)
            logger.debug(f"{len(on_nids)} nids on, {len(nodes)} still pending")

        logger.success("All nodes are powered on")
        return True
