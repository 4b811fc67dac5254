"""
Pattern generation and verification for the ultrasonic handshake.

Handles:
- The two-symbol FSK alphabet (plus the detector-only UNKNOWN sentinel)
- Random pattern generation, the shared secret of one round
- Ordered subsequence matching of emitted vs. detected symbols
- Outcome classification and pass-threshold security figures
"""

import secrets
from dataclasses import dataclass, field
from enum import Enum
from math import comb
from typing import Iterable, List, Sequence, Tuple

from config import NUM_PULSES, PASS_THRESHOLD, FREQ_THRESHOLD


class Symbol(str, Enum):
    """FSK alphabet. UNKNOWN is never emitted, only ever detected."""
    HIGH = "H"
    LOW = "L"
    UNKNOWN = "?"


class Outcome(str, Enum):
    """User-facing result of one round; remediation differs per value."""
    PASSED = "PASSED"
    NO_SIGNAL = "NO_SIGNAL"
    PARTIAL_MATCH = "PARTIAL_MATCH"
    SYSTEM_ERROR = "SYSTEM_ERROR"


Pattern = Tuple[Symbol, ...]

_rng = secrets.SystemRandom()


def generate_pattern(length: int = NUM_PULSES) -> Pattern:
    """
    Draw a fresh random H/L pattern.

    Each symbol is independent with p=0.5. Uses the OS entropy source:
    unpredictability is the security property, so there is no seed.

    Args:
        length: Number of symbols (defaults to NUM_PULSES)

    Returns:
        Immutable tuple of Symbol.HIGH / Symbol.LOW
    """
    if length <= 0:
        raise ValueError(f"Pattern length must be positive, got {length}")
    return tuple(Symbol.HIGH if _rng.random() < 0.5 else Symbol.LOW
                 for _ in range(length))


def classify_frequency(freq: float, threshold: float = FREQ_THRESHOLD) -> Symbol:
    """Classify a frequency as H or L against the boundary."""
    return Symbol.HIGH if freq > threshold else Symbol.LOW


def pattern_to_string(pattern: Iterable[Symbol]) -> str:
    return "".join(Symbol(s).value for s in pattern)


def pattern_from_string(text: str) -> Pattern:
    return tuple(Symbol(c) for c in text)


@dataclass
class VerificationResult:
    """Result of comparing an emitted pattern against a detected sequence."""
    match_count: int
    passed: bool
    matched_positions: List[int] = field(default_factory=list)
    details: List[str] = field(default_factory=list)


def compare_patterns(
    emitted: Sequence[Symbol],
    detected: Sequence[Symbol],
    threshold: int = PASS_THRESHOLD
) -> VerificationResult:
    """
    Find the emitted pattern as an ordered subsequence of the detected one.

    Single forward pass with two pointers: the detected pointer always
    advances, the emitted pointer advances on each match. This is a greedy
    earliest-match count, not a longest common subsequence.

    Examples:
        emitted HHHHH, detected LHHHHHHL  -> 5 matches
        emitted HLHHL, detected LHHLHHLLL -> 5 matches

    Args:
        emitted: Ground-truth pattern
        detected: Symbols reported by the listener, chronological
        threshold: Minimum matches to pass

    Returns:
        VerificationResult with per-pulse details
    """
    emitted = [Symbol(s) for s in emitted]
    detected = [Symbol(s) for s in detected]

    emit_index = 0
    detect_index = 0
    matched_positions: List[int] = []

    while emit_index < len(emitted) and detect_index < len(detected):
        if emitted[emit_index] == detected[detect_index]:
            matched_positions.append(detect_index)
            emit_index += 1
        detect_index += 1

    match_count = len(matched_positions)

    details = []
    for i, symbol in enumerate(emitted):
        if i < match_count:
            details.append(f"ok   pulse {i + 1}: {symbol.value} found at position "
                           f"{matched_positions[i] + 1}")
        else:
            details.append(f"miss pulse {i + 1}: {symbol.value} not found in remaining sequence")
    details.append(f"detected {len(detected)} total peaks: {pattern_to_string(detected)}")
    details.append(f"found {match_count}/{len(emitted)} in order")

    return VerificationResult(
        match_count=match_count,
        passed=match_count >= threshold,
        matched_positions=matched_positions,
        details=details,
    )


def classify_outcome(result: VerificationResult) -> Outcome:
    """Map a verification result to the user-facing outcome."""
    if result.passed:
        return Outcome.PASSED
    if result.match_count == 0:
        return Outcome.NO_SIGNAL
    return Outcome.PARTIAL_MATCH


def security_stats(length: int = NUM_PULSES, threshold: int = PASS_THRESHOLD) -> dict:
    """
    Probability that a blind guess of `length` symbols passes.

    A guess aligned position-by-position with the emitted pattern passes
    when at least `threshold` symbols agree: sum C(n, k) / 2^n, k >= threshold.
    """
    passing = sum(comb(length, k) for k in range(threshold, length + 1))
    patterns = 2 ** length
    return {
        "threshold": threshold,
        "patterns": patterns,
        "guess_rate": passing / patterns,
    }
