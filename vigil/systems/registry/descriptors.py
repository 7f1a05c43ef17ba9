"""
Vigil -- Probe & Repair Descriptors

Adapters that turn a registry entry's declarative descriptor into an
object satisfying the capability protocol:

  command   -- run a shell command; exit 0 is healthy / repaired
  callable  -- import "package.module:attr" and call it (sync or async),
              or use it directly when it already implements probe()/repair()

Descriptors do not apply timeouts themselves. The circuit breaker
manager bounds every call.
"""

from __future__ import annotations

import asyncio
import contextlib
import importlib
import inspect
from typing import Any

import structlog

from vigil.config import DescriptorConfig
from vigil.primitives.errors import ProbeFailure, RegistryConfigError
from vigil.systems.registry.types import RepairOutcome

logger = structlog.get_logger("vigil.systems.registry.descriptors")

# Bytes of stderr/stdout kept in failure messages
_OUTPUT_TAIL: int = 500
_REAP_TIMEOUT_S: float = 5.0


def import_target(target: str) -> Any:
    """Resolve a "package.module:attr" path. Raises RegistryConfigError."""
    module_name, sep, attr_path = target.partition(":")
    if not sep or not module_name or not attr_path:
        raise RegistryConfigError(
            f"callable target must look like 'package.module:attr', got {target!r}"
        )
    try:
        obj: Any = importlib.import_module(module_name)
    except ImportError as exc:
        raise RegistryConfigError(f"cannot import {module_name!r}: {exc}") from exc
    for part in attr_path.split("."):
        try:
            obj = getattr(obj, part)
        except AttributeError as exc:
            raise RegistryConfigError(f"{module_name!r} has no attribute {attr_path!r}") from exc
    return obj


async def _invoke(fn: Any) -> Any:
    """Call a sync or async zero-arg callable without blocking the loop."""
    if inspect.iscoroutinefunction(fn):
        return await fn()
    result = await asyncio.to_thread(fn)
    if inspect.isawaitable(result):
        return await result
    return result


async def _run_shell(command: str) -> tuple[int, str, str]:
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        # Timed out upstream; kill the child and reap it
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(proc.wait(), _REAP_TIMEOUT_S)
        raise
    return (
        proc.returncode if proc.returncode is not None else -1,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


# ─── Command Descriptors ─────────────────────────────────────────


class CommandProbe:
    """
    Probe by running a command.

    Exit status 0 means healthy. If the last line of stdout parses as a
    float it is taken as the score, and a value outside [0, 1] (or NaN)
    fails the probe. Output that is not a number scores 1.0.
    """

    def __init__(self, command: str) -> None:
        self.command = command

    async def probe(self) -> float:
        code, stdout, stderr = await _run_shell(self.command)
        if code != 0:
            raise ProbeFailure(
                f"command exited {code}: {stderr.strip()[-_OUTPUT_TAIL:]}"
            )
        lines = stdout.strip().splitlines()
        if lines:
            try:
                score = float(lines[-1])
            except ValueError:
                return 1.0
            if not 0.0 <= score <= 1.0:
                raise ProbeFailure(f"command reported invalid score: {lines[-1].strip()}")
            return score
        return 1.0

    def __repr__(self) -> str:
        return f"CommandProbe({self.command!r})"


class CommandRepair:
    """Repair by running a command. Exit status 0 means repaired."""

    def __init__(self, command: str) -> None:
        self.command = command

    async def repair(self) -> RepairOutcome:
        code, stdout, stderr = await _run_shell(self.command)
        if code == 0:
            return RepairOutcome(success=True, detail=stdout.strip()[-_OUTPUT_TAIL:])
        return RepairOutcome(
            success=False,
            detail=f"command exited {code}: {stderr.strip()[-_OUTPUT_TAIL:]}",
        )

    def __repr__(self) -> str:
        return f"CommandRepair({self.command!r})"


# ─── Callable Descriptors ────────────────────────────────────────


class CallableProbe:
    """Probe by calling a plain function (sync or async)."""

    def __init__(self, fn: Any) -> None:
        self._fn = fn

    async def probe(self) -> Any:
        return await _invoke(self._fn)


class CallableRepair:
    """Repair by calling a plain function (sync or async)."""

    def __init__(self, fn: Any) -> None:
        self._fn = fn

    async def repair(self) -> Any:
        return await _invoke(self._fn)


def _resolve_capability(target: str, method: str) -> Any:
    obj = import_target(target)
    if inspect.isclass(obj):
        obj = obj()
    if hasattr(obj, method):
        return obj
    if callable(obj):
        return obj
    raise RegistryConfigError(f"{target!r} is neither callable nor has {method}()")


def build_probe(config: DescriptorConfig) -> Any:
    """Build a probe capability from its descriptor config."""
    if config.kind == "command":
        return CommandProbe(config.target)
    obj = _resolve_capability(config.target, "probe")
    return obj if hasattr(obj, "probe") else CallableProbe(obj)


def build_repair(config: DescriptorConfig) -> Any:
    """Build a repair capability from its descriptor config."""
    if config.kind == "command":
        return CommandRepair(config.target)
    obj = _resolve_capability(config.target, "repair")
    return obj if hasattr(obj, "repair") else CallableRepair(obj)


def as_probe(obj: Any) -> Any:
    """Accept either a capability object or a bare callable."""
    if obj is None or hasattr(obj, "probe"):
        return obj
    if callable(obj):
        return CallableProbe(obj)
    raise TypeError(f"{obj!r} is not a probe")


def as_repair(obj: Any) -> Any:
    """Accept either a capability object or a bare callable."""
    if obj is None or hasattr(obj, "repair"):
        return obj
    if callable(obj):
        return CallableRepair(obj)
    raise TypeError(f"{obj!r} is not a repair action")
