"""
Automated A/B testing of emission configs.

Runs repeated handshakes over a list of volume presets and summarises
pass rate and score distribution per config.

Modes:
- local:  this device's speaker into its own microphone (loopback)
- remote: full handshake through the store, against a live coordinator

A test that hits a system error (hardware, channel, store, timeout) is
retried after AUTOTEST_RETRY_DELAY_S, up to AUTOTEST_MAX_RETRIES times, and
then recorded as SYSTEM_ERR with score 0.
"""

import asyncio
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from comms import EventSink, NullEventSink
from config import (
    NUM_PULSES, VOLUME_PRESETS, TESTS_PER_CONFIG, AUTOTEST_MAX_RETRIES,
    AUTOTEST_RETRY_DELAY_S, AUTOTEST_PREROLL_MS, AUTOTEST_SETTLE_MS,
    AUTOTEST_REMOTE_TIMEOUT_S
)
from dsp_pipeline import SpectralDetector, detected_pattern
from emitter import PulseEmitter
from participant import ParticipantSession
from patterns import Outcome, compare_patterns, generate_pattern, pattern_to_string
from records import ColocationError, EmitterConfig

SYSTEM_ERR = "SYSTEM_ERR"


@dataclass
class TestResult:
    __test__ = False

    config_label: str
    volume: float
    passed: bool
    match_score: int
    emitted_pattern: str
    detected_pattern: str
    timestamp: float = field(default_factory=time.time)
    diagnostics: Optional[Dict] = None

    @property
    def is_system_error(self) -> bool:
        return self.emitted_pattern == SYSTEM_ERR


@dataclass
class ConfigSummary:
    label: str
    volume: float
    total_tests: int
    pass_count: int
    pass_rate: float                        # Percent
    avg_score: float
    score_distribution: Dict[int, int]      # score -> count, every score 0..N present
    failed_patterns: List[str]              # First three failed detections


@dataclass
class TestSummary:
    __test__ = False

    config_summaries: List[ConfigSummary]
    best_config: Optional[str]
    worst_config: Optional[str]
    total_pass_rate: float
    total_tests: int


def config_label(volume: float, use_output_filter: bool = True) -> str:
    base = VOLUME_PRESETS.get(volume, f"{volume * 100:g}%")
    return base if use_output_filter else f"{base} (No Filter)"


def calculate_summary(results: Sequence[TestResult]) -> TestSummary:
    """
    Aggregate results per config label.

    Configs are ordered by pass rate, best first; ties keep the order in
    which the configs were first tested.
    """
    by_label: Dict[str, List[TestResult]] = {}
    for r in results:
        by_label.setdefault(r.config_label, []).append(r)

    summaries = []
    for label, tests in by_label.items():
        pass_count = sum(1 for t in tests if t.passed)
        scores = [t.match_score for t in tests]

        distribution = {score: 0 for score in range(NUM_PULSES + 1)}
        for s in scores:
            distribution[s] = distribution.get(s, 0) + 1

        summaries.append(ConfigSummary(
            label=label,
            volume=tests[0].volume,
            total_tests=len(tests),
            pass_count=pass_count,
            pass_rate=pass_count / len(tests) * 100,
            avg_score=sum(scores) / len(scores) if scores else 0.0,
            score_distribution=distribution,
            failed_patterns=[t.detected_pattern for t in tests if not t.passed][:3],
        ))

    summaries.sort(key=lambda s: s.pass_rate, reverse=True)
    total_passed = sum(1 for r in results if r.passed)

    return TestSummary(
        config_summaries=summaries,
        best_config=summaries[0].label if summaries else None,
        worst_config=summaries[-1].label if summaries else None,
        total_pass_rate=total_passed / len(results) * 100 if results else 0.0,
        total_tests=len(results),
    )


def format_summary(summary: TestSummary, results: Sequence[TestResult] = (),
                   when: Optional[datetime] = None) -> str:
    """Plain-text report: overview, per-config block, raw results."""
    when = when or datetime.now()
    lines = [
        "=== AUTO-TEST RESULTS ===",
        f"Date: {when.strftime('%Y-%m-%d %H:%M:%S')}",
        f"Total Tests: {summary.total_tests}",
        f"Overall Pass Rate: {summary.total_pass_rate:.1f}%",
        f"Best Config: {summary.best_config}",
        f"Worst Config: {summary.worst_config}",
        "",
        "--- Per-Config Results ---",
    ]

    for config in summary.config_summaries:
        lines.append("")
        lines.append(f"{config.label}:")
        lines.append(f"  Pass Rate: {config.pass_count}/{config.total_tests} ({config.pass_rate:.0f}%)")
        lines.append(f"  Avg Score: {config.avg_score:.1f}/{NUM_PULSES}")
        lines.append("  Score Distribution: " +
                     ", ".join(f"{s}->{c}" for s, c in config.score_distribution.items()))
        if config.failed_patterns:
            lines.append(f"  Failed Patterns: {', '.join(config.failed_patterns)}")

    if results:
        lines.append("")
        lines.append("--- Raw Results ---")
        for i, r in enumerate(results, 1):
            verdict = "PASS" if r.passed else "FAIL"
            lines.append(f"{i}. [{r.config_label}] {verdict} ({r.match_score}/{NUM_PULSES}) "
                         f"E:{r.emitted_pattern} D:{r.detected_pattern}")
            if r.diagnostics:
                peaks = " ".join(f"{p['symbol']}({p['amplitude_db']:.0f}dB, SNR:{p['snr_db']:.0f})"
                                 for p in r.diagnostics.get("peaks", []))
                lines.append(f"    Diagnostics: Noise Floor: {r.diagnostics['noise_floor_db']:.1f}dB "
                             f"| Peaks: {peaks}")

    return "\n".join(lines)


class AutoTestRunner:
    """
    Runs `tests_per_config` handshakes for every selected volume.

    Build with AutoTestRunner.local(...) or AutoTestRunner.remote(...).
    """

    def __init__(self, volumes: Sequence[float], tests_per_config: int = TESTS_PER_CONFIG,
                 use_output_filter: bool = True, base_config: Optional[EmitterConfig] = None,
                 sink: Optional[EventSink] = None, emitter: Optional[PulseEmitter] = None,
                 detector: Optional[SpectralDetector] = None,
                 participant: Optional[ParticipantSession] = None):
        if not volumes:
            raise ValueError("Select at least one volume level to test")
        if tests_per_config <= 0:
            raise ValueError("tests_per_config must be positive")
        if participant is None and (emitter is None or detector is None):
            raise ValueError("Local mode needs an emitter and a detector")

        self.volumes = sorted(volumes, reverse=True)
        self.tests_per_config = tests_per_config
        self.use_output_filter = use_output_filter
        self.base_config = base_config or EmitterConfig()
        self.sink = sink or NullEventSink()
        self.emitter = emitter
        self.detector = detector
        self.participant = participant

        self.results: List[TestResult] = []
        self.summary: Optional[TestSummary] = None
        self.is_running = False

    @classmethod
    def local(cls, emitter: PulseEmitter, detector: SpectralDetector, volumes: Sequence[float],
              **kwargs) -> "AutoTestRunner":
        return cls(volumes, emitter=emitter, detector=detector, **kwargs)

    @classmethod
    def remote(cls, participant: ParticipantSession, volumes: Sequence[float],
               **kwargs) -> "AutoTestRunner":
        return cls(volumes, participant=participant, **kwargs)

    @property
    def is_local(self) -> bool:
        return self.participant is None

    @property
    def total_tests(self) -> int:
        return self.tests_per_config * len(self.volumes)

    def config_for(self, volume: float) -> EmitterConfig:
        return replace(self.base_config, volume=volume, use_output_filter=self.use_output_filter)

    async def run(self) -> TestSummary:
        """
        Run every test, then summarise.

        Raises:
            HardwareAcquisitionError: Local audio could not be initialised
        """
        mode = " (LOCAL MODE)" if self.is_local else ""
        self.sink.info("autotest", f"Starting {self.total_tests} tests across "
                                   f"{len(self.volumes)} configs{mode}")
        if self.is_local:
            await self.emitter.init()

        self.results = []
        self.summary = None
        self.is_running = True
        try:
            for volume in self.volumes:
                label = config_label(volume, self.use_output_filter)
                for test_number in range(1, self.tests_per_config + 1):
                    if not self.is_running:
                        break
                    result = await self._run_with_retries(volume, label, test_number)
                    self.results.append(result)
                if not self.is_running:
                    break
            if self.is_running:
                self.sink.success("autotest", f"All tests complete! {len(self.results)} tests run")
        finally:
            self.is_running = False
            if self.is_local:
                await self.detector.cleanup()
                await self.emitter.cleanup()

        self.summary = calculate_summary(self.results)
        return self.summary

    def stop(self) -> None:
        """Stop after the current test; run() then summarises partial results."""
        if self.is_running:
            self.sink.info("autotest", "Testing stopped by user")
        self.is_running = False

    def report(self) -> str:
        if self.summary is None:
            return ""
        return format_summary(self.summary, self.results)

    async def _run_with_retries(self, volume: float, label: str, test_number: int) -> TestResult:
        retries = 0
        while True:
            try:
                if self.is_local:
                    result = await self._run_local_test(volume, label)
                else:
                    result = await self._run_remote_test(volume, label)
            except (ColocationError, asyncio.TimeoutError) as e:
                reason = str(e) or type(e).__name__
                if retries >= AUTOTEST_MAX_RETRIES:
                    self.sink.error("autotest", f"Test failed after {AUTOTEST_MAX_RETRIES} retries: "
                                                f"{reason}. Skipping.")
                    return TestResult(label, volume, False, 0, SYSTEM_ERR, reason)
                retries += 1
                self.sink.info("autotest", f"System error ({reason}), retrying test {test_number} "
                                           f"(attempt {retries + 1}/{AUTOTEST_MAX_RETRIES + 1})...")
                await asyncio.sleep(AUTOTEST_RETRY_DELAY_S)
                continue

            verdict = "PASSED" if result.passed else "FAILED"
            self.sink.info("autotest", f"Test {test_number}/{self.tests_per_config} @ {label}: "
                                       f"{verdict} ({result.match_score}/{NUM_PULSES})")
            return result

    async def _run_local_test(self, volume: float, label: str) -> TestResult:
        """Speaker -> microphone on this device."""
        await self.detector.start_recording()
        try:
            await asyncio.sleep(AUTOTEST_PREROLL_MS / 1000.0)
            self.detector.clear_peaks()

            pattern = generate_pattern(NUM_PULSES)
            await self.emitter.emit(pattern, self.config_for(volume))
            await asyncio.sleep(AUTOTEST_SETTLE_MS / 1000.0)

            peaks = await self.detector.stop_and_analyze()
        finally:
            await self.detector.cleanup()

        detected = detected_pattern(peaks)
        comparison = compare_patterns(pattern, detected)
        return TestResult(
            config_label=label,
            volume=volume,
            passed=comparison.passed,
            match_score=comparison.match_count,
            emitted_pattern=pattern_to_string(pattern),
            detected_pattern=pattern_to_string(detected),
            diagnostics=self.detector.diagnostics(),
        )

    async def _run_remote_test(self, volume: float, label: str) -> TestResult:
        """Full handshake through the store."""
        await self.participant.update_config(self.config_for(volume))
        try:
            outcome = await asyncio.wait_for(self.participant.run_round(), AUTOTEST_REMOTE_TIMEOUT_S)
        except asyncio.TimeoutError:
            await self.participant.cancel()
            raise asyncio.TimeoutError("Timeout")

        if outcome is None:
            raise ColocationError("Request Failed")
        if outcome.outcome == Outcome.SYSTEM_ERROR:
            raise ColocationError(outcome.cause or "system error")

        record = self.participant.store.get(outcome.request_id) or {}
        return TestResult(
            config_label=label,
            volume=volume,
            passed=outcome.passed,
            match_score=outcome.match_count,
            emitted_pattern="".join(record.get("emittedPattern") or []),
            detected_pattern="".join(record.get("detectedPattern") or []),
            diagnostics=record.get("diagnosticData"),
        )
