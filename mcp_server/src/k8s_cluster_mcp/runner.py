"""
Command execution for kubectl, helm and gcloud.

`execute_process` is the single process-exec primitive: it spawns one child
with an argument vector (never a shell), drains stdout/stderr, enforces a
wall-clock timeout and turns every failure into a classified error.

`CommandRunner` layers cluster context injection on top of it. Two flavours
exist: kubectl (30s, ``--context``) and helm (60s, ``--kube-context``).
"""

import asyncio
import os
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Type

from k8s_cluster_mcp.context import inject_context
from k8s_cluster_mcp.errors import (
    ClusterConnectionError,
    CommandTimeoutError,
    ExecutionError,
    InvalidArgumentsError,
    K8sToolError,
    NotFoundError,
)
from k8s_cluster_mcp.logs import get_logger

logger = get_logger(__name__)

KUBECTL_TIMEOUT_SECONDS = 30
HELM_TIMEOUT_SECONDS = 60

# Seconds between SIGTERM and SIGKILL for a timed-out child
KILL_GRACE_SECONDS = 1.0


# ============================================================================
# FAILURE CLASSIFICATION
# ============================================================================

def stderr_contains(fragment: str) -> Callable[[str], bool]:
    fragment = fragment.lower()

    def predicate(stderr: str) -> bool:
        return fragment in stderr.lower()

    return predicate


# Evaluated in order; first match wins
FAILURE_RULES: List[Tuple[Callable[[str], bool], Type[K8sToolError]]] = [
    (stderr_contains("timeout"), CommandTimeoutError),
    (stderr_contains("not found"), NotFoundError),
    (stderr_contains("connection refused"), ClusterConnectionError),
]


def classify_failure(
    stderr: str,
    returncode: Optional[int],
    rules: Optional[Sequence[Tuple[Callable[[str], bool], Type[K8sToolError]]]] = None,
) -> K8sToolError:
    """Map a nonzero exit to an error instance using the ordered rule table"""
    stderr = (stderr or "").strip()
    if stderr:
        message = stderr
    elif returncode is not None and returncode < 0:
        message = f"Process terminated by signal {-returncode}"
    else:
        message = f"Exit code: {returncode}"

    for predicate, error_cls in (FAILURE_RULES if rules is None else rules):
        if predicate(stderr):
            return error_cls(message)
    return ExecutionError(message)


# ============================================================================
# PROCESS EXECUTION
# ============================================================================

async def _terminate(process) -> None:
    """SIGTERM the child, escalate to SIGKILL after the grace period, then reap it"""
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_SECONDS)
    except asyncio.TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()


async def execute_process(
    program: str,
    args: Sequence[str],
    timeout: float,
    env: Optional[Dict[str, str]] = None,
) -> str:
    """Run `program args...` and return trimmed stdout, or raise a classified error"""
    argv = [str(a) for a in args]
    display = " ".join([program] + argv)
    start_ts = time.time()
    logger.debug({"event": "command_started", "command": display, "timeout": timeout})

    try:
        process = await asyncio.create_subprocess_exec(
            program,
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, **env} if env else None,
        )
    except OSError as e:
        logger.error({"event": "command_spawn_failed", "command": display, "error": e})
        raise ExecutionError(f"Failed to start {program}: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        await _terminate(process)
        logger.warning({
            "event": "command_timeout",
            "command": display,
            "timeout": timeout,
            "duration_ms": int((time.time() - start_ts) * 1000),
        })
        raise CommandTimeoutError(f"Command timeout after {timeout}s: {display}")

    out = stdout.decode(errors="replace").strip()
    err = stderr.decode(errors="replace").strip()
    duration_ms = int((time.time() - start_ts) * 1000)

    if process.returncode != 0:
        error = classify_failure(err, process.returncode)
        logger.error({
            "event": "command_failed",
            "command": display,
            "returncode": process.returncode,
            "error_kind": error.kind,
            "stderr": err,
            "duration_ms": duration_ms,
        })
        raise error

    if err and not out:
        logger.warning({"event": "command_stderr", "command": display, "stderr": err})

    logger.info({
        "event": "command_finished",
        "command": display,
        "stdout_length": len(out),
        "duration_ms": duration_ms,
    })
    return out


# ============================================================================
# RUNNERS
# ============================================================================

class CommandRunner:
    """Runs one CLI program with cluster context flags injected.

    Holds static configuration only, so concurrent ``run`` calls are independent.
    """

    def __init__(self, program: str, context_flag: str, timeout: float, registry=None):
        self.program = program
        self.context_flag = context_flag
        self.timeout = timeout
        self.registry = registry

    async def run(self, args: Sequence[str], cluster_id: Optional[str] = None) -> str:
        if not isinstance(args, (list, tuple)) or len(args) == 0:
            raise InvalidArgumentsError(f"{self.program} arguments must be a non-empty list")
        argv = inject_context(list(args), cluster_id, self.registry, self.context_flag)
        return await execute_process(self.program, argv, self.timeout)

    def __repr__(self) -> str:
        return f"CommandRunner(program={self.program!r}, timeout={self.timeout})"


def _configured_timeout(registry, key: str, default: float) -> float:
    configuration = getattr(registry, "configuration", None) or {}
    try:
        value = float(configuration.get(key, default))
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def kubectl_runner(registry=None) -> CommandRunner:
    return CommandRunner(
        "kubectl",
        "--context",
        _configured_timeout(registry, "kubectl_timeout", KUBECTL_TIMEOUT_SECONDS),
        registry,
    )


def helm_runner(registry=None) -> CommandRunner:
    return CommandRunner(
        "helm",
        "--kube-context",
        _configured_timeout(registry, "helm_timeout", HELM_TIMEOUT_SECONDS),
        registry,
    )
