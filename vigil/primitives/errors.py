"""
Vigil -- Error Hierarchy

All exceptions raised inside the orchestration core.

Propagation guide:
  ProbeTimeout, ProbeFailure   -> absorbed by the circuit breaker failure counter
  RepairFailure                -> retried by the responder, then threat ESCALATED
  CircuitOpenRejection         -> short-circuit, fallback value returned (not a failure)
  DetectorScanError            -> recorded as a medium "scan_degraded" threat
  EscalationRequired           -> raised by a response strategy that cannot contain a threat
  RegistryConfigError          -> fatal at startup, nothing else is
"""

from __future__ import annotations


class VigilError(RuntimeError):
    """Base for all orchestration core errors."""


class ProbeTimeout(VigilError):
    """A health probe did not answer within its execution timeout."""


class ProbeFailure(VigilError):
    """A health probe raised, or returned something that is not a score in [0, 1]."""


class RepairFailure(VigilError):
    """A repair descriptor raised, timed out, or reported an unsuccessful outcome."""


class CircuitOpenRejection(VigilError):
    """
    The call was short-circuited by an open (or busy half-open) circuit.

    Not a failure of the underlying system: the descriptor was never invoked.
    """

    def __init__(self, system_id: str, state: str) -> None:
        super().__init__(f"circuit for {system_id} is {state}")
        self.system_id = system_id
        self.state = state


class DetectorScanError(VigilError):
    """A scanner raised while inspecting one system."""

    def __init__(self, system_id: str, scanner: str, cause: BaseException) -> None:
        super().__init__(f"{scanner} scan of {system_id} failed: {cause}")
        self.system_id = system_id
        self.scanner = scanner
        self.cause = cause


class EscalationRequired(VigilError):
    """The responder could not contain a threat within its retry budget."""

    def __init__(self, threat_id: str, reason: str) -> None:
        super().__init__(f"threat {threat_id} requires escalation: {reason}")
        self.threat_id = threat_id
        self.reason = reason


class RegistryConfigError(VigilError):
    """The registry configuration is malformed. Fatal at startup."""


class UnknownSystemError(VigilError):
    """No managed system is registered under the given id."""


class UnknownThreatError(VigilError):
    """No threat record (active or archived) has the given id."""
