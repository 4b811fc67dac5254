"""
Participant request records and the handshake state graph.

Defines:
- Error taxonomy shared by all components
- EmitterConfig (the batching key)
- Status and the allowed transition edges
- ParticipantRequest with its persisted (camelCase) record schema
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from config import (
    DEFAULT_VOLUME, FREQ_LOW, FREQ_HIGH, PULSE_DURATION_MS, PULSE_GAP_MS,
    FILTER_CUTOFF_HZ
)
from patterns import Symbol, Pattern


# =============================================================================
# Errors
# =============================================================================

class ColocationError(Exception):
    """Base class for handshake errors."""


class HardwareAcquisitionError(ColocationError):
    """Microphone or speaker could not be acquired. Fatal for the session."""


class EmissionError(ColocationError):
    """Transient acoustic channel failure during an emission."""


class StoreWriteError(ColocationError):
    """A write to the shared state store failed."""


class RecordNotFoundError(StoreWriteError):
    """The record targeted by a write no longer exists."""


class InvalidTransitionError(ColocationError):
    """A status change outside the handshake graph was attempted."""


# =============================================================================
# Emitter configuration
# =============================================================================

@dataclass(frozen=True)
class EmitterConfig:
    """
    Emission parameters. Two participants share a batch iff all fields match.

    Frozen so that it can key the batch grouping directly.
    """
    volume: float = DEFAULT_VOLUME
    freq_low: float = FREQ_LOW
    freq_high: float = FREQ_HIGH
    pulse_duration_ms: float = PULSE_DURATION_MS
    pulse_gap_ms: float = PULSE_GAP_MS
    use_output_filter: bool = True
    filter_cutoff_hz: float = FILTER_CUTOFF_HZ

    def __post_init__(self):
        if not 0.0 <= self.volume <= 1.0:
            raise ValueError(f"volume must be in [0, 1], got {self.volume}")
        if self.pulse_duration_ms <= 0:
            raise ValueError("pulse_duration_ms must be positive")
        if self.pulse_gap_ms < 0:
            raise ValueError("pulse_gap_ms must be non-negative")
        if self.freq_low >= self.freq_high:
            raise ValueError("freq_low must be below freq_high")

    def to_record(self) -> Dict[str, Any]:
        return {
            "volume": self.volume,
            "freqLow": self.freq_low,
            "freqHigh": self.freq_high,
            "pulseDuration": self.pulse_duration_ms,
            "pulseGap": self.pulse_gap_ms,
            "useOutputFilter": self.use_output_filter,
            "filterCutoff": self.filter_cutoff_hz,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "EmitterConfig":
        defaults = cls()
        return cls(
            volume=data.get("volume", defaults.volume),
            freq_low=data.get("freqLow", defaults.freq_low),
            freq_high=data.get("freqHigh", defaults.freq_high),
            pulse_duration_ms=data.get("pulseDuration", defaults.pulse_duration_ms),
            pulse_gap_ms=data.get("pulseGap", defaults.pulse_gap_ms),
            use_output_filter=data.get("useOutputFilter", defaults.use_output_filter),
            filter_cutoff_hz=data.get("filterCutoff", defaults.filter_cutoff_hz),
        )

    def key(self) -> str:
        """Readable grouping key for logs."""
        return (f"{self.volume}_{self.freq_low}_{self.freq_high}_{self.pulse_duration_ms}_"
                f"{self.pulse_gap_ms}_{self.use_output_filter}_{self.filter_cutoff_hz}")


# =============================================================================
# Status graph
# =============================================================================

class Status(str, Enum):
    WAITING = "waiting"
    READY = "ready"
    EMITTING = "emitting"
    LISTENING = "listening"
    SUBMITTED = "submitted"
    VERIFIED = "verified"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (Status.VERIFIED, Status.FAILED)


# Forward edges. EMITTING -> SUBMITTED covers a straggler that never signalled
# LISTENING before the batch was told to submit; EMITTING/LISTENING -> FAILED
# records an emission that exhausted its retries.
FORWARD_EDGES: Dict[Status, FrozenSet[Status]] = {
    Status.WAITING: frozenset({Status.READY}),
    Status.READY: frozenset({Status.EMITTING}),
    Status.EMITTING: frozenset({Status.LISTENING, Status.SUBMITTED, Status.FAILED}),
    Status.LISTENING: frozenset({Status.SUBMITTED, Status.FAILED}),
    Status.SUBMITTED: frozenset({Status.SUBMITTED, Status.VERIFIED, Status.FAILED}),
    Status.VERIFIED: frozenset(),
    Status.FAILED: frozenset(),
}

# Explicit reset: participant retry, cancel or timeout.
RESET_TARGET = Status.WAITING


def is_allowed_transition(current: Status, new: Status) -> bool:
    """True if current -> new is a graph edge or an explicit reset."""
    if new == RESET_TARGET:
        return True
    return new in FORWARD_EDGES[current]


def check_transition(current: Status, new: Status) -> None:
    if not is_allowed_transition(current, new):
        raise InvalidTransitionError(f"{current.value} -> {new.value} is not a handshake edge")


# =============================================================================
# Participant request
# =============================================================================

def _symbols(values: Optional[List[str]]) -> Optional[Pattern]:
    if values is None:
        return None
    return tuple(Symbol(v) for v in values)


def _symbol_values(pattern: Optional[Tuple[Symbol, ...]]) -> Optional[List[str]]:
    if pattern is None:
        return None
    return [Symbol(s).value for s in pattern]


@dataclass
class ParticipantRequest:
    """
    One verification attempt as stored in the shared state store.

    Field ownership: the coordinator writes status/emitted_pattern/batch_id,
    the participant writes detected_pattern/diagnostic_data, the verifier
    writes match_count/passed/verified_at.
    """
    id: str
    session_id: str
    participant_id: str
    status: Status = Status.WAITING
    config: EmitterConfig = field(default_factory=EmitterConfig)
    display_name: str = ""
    batch_id: Optional[str] = None
    emitted_pattern: Optional[Pattern] = None
    detected_pattern: Optional[Pattern] = None
    match_count: Optional[int] = None
    passed: Optional[bool] = None
    failure_cause: Optional[str] = None
    diagnostic_data: Optional[Dict[str, Any]] = None
    created_at: float = field(default_factory=time.time)
    verified_at: Optional[float] = None

    @property
    def has_detection(self) -> bool:
        return bool(self.detected_pattern)

    def to_record(self) -> Dict[str, Any]:
        """Persisted schema. Keys are shared with other implementations."""
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "participantId": self.participant_id,
            "displayName": self.display_name,
            "status": self.status.value,
            "config": self.config.to_record(),
            "batchId": self.batch_id,
            "emittedPattern": _symbol_values(self.emitted_pattern),
            "detectedPattern": _symbol_values(self.detected_pattern),
            "matchCount": self.match_count,
            "passed": self.passed,
            "failureCause": self.failure_cause,
            "diagnosticData": self.diagnostic_data,
            "createdAt": self.created_at,
            "verifiedAt": self.verified_at,
        }

    @classmethod
    def from_record(cls, data: Dict[str, Any]) -> "ParticipantRequest":
        return cls(
            id=data["id"],
            session_id=data["sessionId"],
            participant_id=data["participantId"],
            display_name=data.get("displayName", ""),
            status=Status(data["status"]),
            config=EmitterConfig.from_record(data.get("config") or {}),
            batch_id=data.get("batchId"),
            emitted_pattern=_symbols(data.get("emittedPattern")),
            detected_pattern=_symbols(data.get("detectedPattern")),
            match_count=data.get("matchCount"),
            passed=data.get("passed"),
            failure_cause=data.get("failureCause"),
            diagnostic_data=data.get("diagnosticData"),
            created_at=data.get("createdAt", 0.0),
            verified_at=data.get("verifiedAt"),
        )


# Written during a round; cleared whenever the request goes back to waiting
ROUND_FIELDS = ("batchId", "emittedPattern", "detectedPattern", "matchCount", "passed",
                "failureCause", "diagnosticData", "verifiedAt")


def round_reset_fields() -> Dict[str, Any]:
    return {key: None for key in ROUND_FIELDS}


def status_fields(current: Status, new: Status, **extra: Any) -> Dict[str, Any]:
    """
    Build the update payload for a status change.

    Validates the edge and stamps verifiedAt on terminal statuses.
    Extra keyword arguments are persisted verbatim (camelCase keys).
    """
    check_transition(current, new)
    fields = {"status": new.value}
    fields.update(extra)
    if new.is_terminal and "verifiedAt" not in fields:
        fields["verifiedAt"] = time.time()
    return fields
