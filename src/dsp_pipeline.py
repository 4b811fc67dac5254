"""
Spectral peak detector for ultrasonic FSK pulses.

Handles:
- Per-frame magnitude spectrum in dBFS, restricted to the ultrasonic band
- Adaptive noise floor (EWMA of the per-frame median, ratchets upward only)
- SNR gating and carrier-proximity classification
- Merging reflections of one physical pulse into a single peak
- Capping to the strongest MAX_PEAKS, re-sorted chronologically

The analysis loop is an asyncio task fed by the input stream, woken once per
available buffer, and cancelled promptly on stop.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Tuple

import librosa
import numpy as np
from scipy.signal import get_window

from comms import EventSink, NullEventSink
from config import (
    FFT_SIZE, BAND_LOW_HZ, BAND_HIGH_HZ, SNR_THRESHOLD, NOISE_FLOOR_INIT_DB,
    NOISE_FLOOR_ALPHA, FREQ_TOLERANCE_HZ, PEAK_MERGE_FREQ_HZ, PEAK_MERGE_TIME_MS,
    MAX_PEAKS, FREQ_LOW, FREQ_HIGH
)
from patterns import Symbol, Pattern, pattern_to_string
from records import HardwareAcquisitionError

# Minimum SNR in dB (linear amplitude ratio -> dB)
MIN_SNR_DB = 20.0 * np.log10(SNR_THRESHOLD)


@dataclass
class DetectedPeak:
    frequency_hz: float
    amplitude_db: float
    timestamp: float        # Device clock, seconds
    symbol: Symbol
    snr_db: float

    def to_record(self) -> Dict:
        data = asdict(self)
        data["symbol"] = self.symbol.value
        return data


def magnitude_spectrum_db(samples: np.ndarray, sample_rate: int) -> Tuple[np.ndarray, np.ndarray]:
    """
    Hann-windowed magnitude spectrum in dBFS.

    A full-scale sine reads ~0 dB at its bin.

    Args:
        samples: One frame of mono audio, float
        sample_rate: Sample rate of the frame

    Returns:
        (frequencies_hz, amplitude_db), both of length n_fft // 2 + 1
    """
    n_fft = len(samples)
    window = get_window("hann", n_fft, fftbins=True)
    spectrum = np.fft.rfft(samples * window)
    magnitude = np.abs(spectrum) * 2.0 / np.sum(window)
    freqs = librosa.fft_frequencies(sr=sample_rate, n_fft=n_fft)
    amplitude_db = librosa.amplitude_to_db(magnitude, ref=1.0, amin=1e-10, top_db=None)
    return freqs, amplitude_db


def band_mask(freqs: np.ndarray, low_hz: float = BAND_LOW_HZ, high_hz: float = BAND_HIGH_HZ) -> np.ndarray:
    return (freqs >= low_hz) & (freqs <= high_hz)


def detected_pattern(peaks: List[DetectedPeak]) -> Pattern:
    """
    Symbols of a finished detection, in order.

    An empty detection is reported as a single UNKNOWN slot so that the
    submission is never empty.
    """
    if not peaks:
        return (Symbol.UNKNOWN,)
    return tuple(p.symbol for p in peaks)


def cap_peaks(peaks: List[DetectedPeak], max_peaks: int = MAX_PEAKS) -> List[DetectedPeak]:
    """Keep the strongest `max_peaks`, then restore chronological order."""
    final = list(peaks)
    if len(final) > max_peaks:
        final.sort(key=lambda p: p.amplitude_db, reverse=True)
        final = final[:max_peaks]
    final.sort(key=lambda p: p.timestamp)
    return final


class SpectralDetector:
    """
    Listens to an input device and extracts FSK symbols.

    The device must provide `open(frame_size)` returning a stream with
    `sample_rate`, `async read() -> Optional[(samples, timestamp)]` and
    `close()`.
    """

    def __init__(self, device, freq_low: float = FREQ_LOW, freq_high: float = FREQ_HIGH,
                 sink: Optional[EventSink] = None, fft_size: int = FFT_SIZE):
        """
        Args:
            device: Audio input device
            freq_low: Carrier of symbol L
            freq_high: Carrier of symbol H
            sink: Event sink
            fft_size: Samples per analysis frame
        """
        self.device = device
        self.freq_low = freq_low
        self.freq_high = freq_high
        self.sink = sink or NullEventSink()
        self.fft_size = fft_size

        self.peaks: List[DetectedPeak] = []
        self.noise_floor_db = NOISE_FLOOR_INIT_DB
        self.frames_analyzed = 0
        self._stream = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_recording(self) -> bool:
        return self._task is not None and not self._task.done()

    # ----------------------------------------------------------- lifecycle

    async def start_recording(self) -> None:
        """
        Acquire the microphone and start the analysis task.

        Raises:
            HardwareAcquisitionError: Microphone unavailable or denied
        """
        if self.is_recording:
            return
        try:
            self._stream = self.device.open(self.fft_size)
        except HardwareAcquisitionError as e:
            self.sink.error("listener", f"Init failed: {e}")
            raise

        self.peaks = []
        self.noise_floor_db = NOISE_FLOOR_INIT_DB
        self.frames_analyzed = 0
        self._task = asyncio.create_task(self._analysis_loop())
        self.sink.info("listener", "Recording started")

    def clear_peaks(self) -> None:
        """Drop pre-emission peaks without restarting the recording."""
        old_count = len(self.peaks)
        self.peaks = []
        self.noise_floor_db = NOISE_FLOOR_INIT_DB
        if old_count > 0:
            self.sink.debug("listener", f"Cleared {old_count} pre-emission peaks")

    async def stop_and_analyze(self) -> List[DetectedPeak]:
        """
        Stop recording and return the final peaks.

        Returns:
            At most MAX_PEAKS peaks (strongest kept), chronological
        """
        await self._stop()
        self.sink.info("listener", f"Recording stopped. {len(self.peaks)} peaks detected")

        final = cap_peaks(self.peaks)
        if len(self.peaks) > MAX_PEAKS:
            self.sink.debug("listener", f"Capped to {MAX_PEAKS} strongest peaks")

        self.sink.success("listener", f"Final peaks ({len(final)}): "
                                      f"{pattern_to_string(p.symbol for p in final)}")
        return final

    def diagnostics(self) -> Dict:
        return {
            "peaks": [p.to_record() for p in self.peaks],
            "noise_floor_db": self.noise_floor_db,
        }

    async def cleanup(self) -> None:
        """Release the microphone without analysing."""
        await self._stop()
        self.sink.debug("listener", "Cleanup complete")

    @asynccontextmanager
    async def recording(self):
        """Scoped recording: the stream is released however the block exits."""
        await self.start_recording()
        try:
            yield self
        finally:
            await self._stop()

    async def _stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._stream is not None:
            self._stream.close()
            self._stream = None

    # ------------------------------------------------------------ analysis

    async def _analysis_loop(self) -> None:
        stream = self._stream
        while True:
            item = await stream.read()
            if item is None:
                self.sink.debug("listener", "Input stream ended")
                return
            samples, timestamp = item
            self.process_frame(samples, timestamp, stream.sample_rate)

    def process_frame(self, samples: np.ndarray, timestamp: float,
                      sample_rate: int) -> Optional[DetectedPeak]:
        """
        Analyse one audio frame.

        Returns:
            The new or updated peak, or None if the frame was rejected
        """
        freqs, amplitude_db = magnitude_spectrum_db(samples, sample_rate)
        self.frames_analyzed += 1
        mask = band_mask(freqs)
        return self.process_spectrum(freqs[mask], amplitude_db[mask], timestamp)

    def process_spectrum(self, band_freqs: np.ndarray, band_db: np.ndarray,
                         timestamp: float) -> Optional[DetectedPeak]:
        """
        Run steps 1-5 of peak extraction on an in-band spectrum.

        Args:
            band_freqs: Bin frequencies inside the ultrasonic band
            band_db: Bin amplitudes (dBFS) inside the band
            timestamp: Frame time on the device clock (seconds)
        """
        if len(band_db) == 0:
            return None

        max_index = int(np.argmax(band_db))
        max_amplitude = float(band_db[max_index])
        freq = float(band_freqs[max_index])

        # Noise floor ratchets upward only
        median = float(np.sort(band_db)[len(band_db) // 2])
        if median > self.noise_floor_db:
            self.noise_floor_db = (self.noise_floor_db * (1.0 - NOISE_FLOOR_ALPHA)
                                   + median * NOISE_FLOOR_ALPHA)

        snr_db = max_amplitude - self.noise_floor_db
        if snr_db < MIN_SNR_DB:
            return None

        symbol = self.classify(freq)
        if symbol is None:
            return None

        return self._merge_peak(DetectedPeak(freq, max_amplitude, timestamp, symbol, snr_db))

    def classify(self, freq: float) -> Optional[Symbol]:
        """H or L if within tolerance of a carrier, else None (interference)."""
        if abs(freq - self.freq_high) <= FREQ_TOLERANCE_HZ:
            return Symbol.HIGH
        if abs(freq - self.freq_low) <= FREQ_TOLERANCE_HZ:
            return Symbol.LOW
        return None

    def _merge_peak(self, peak: DetectedPeak) -> Optional[DetectedPeak]:
        merge_window_s = PEAK_MERGE_TIME_MS / 1000.0
        for existing in self.peaks:
            if (abs(existing.frequency_hz - peak.frequency_hz) < PEAK_MERGE_FREQ_HZ
                    and (peak.timestamp - existing.timestamp) < merge_window_s):
                if peak.amplitude_db > existing.amplitude_db:
                    existing.frequency_hz = peak.frequency_hz
                    existing.amplitude_db = peak.amplitude_db
                    existing.timestamp = peak.timestamp
                    existing.symbol = peak.symbol
                    existing.snr_db = peak.snr_db
                    return existing
                return None

        self.peaks.append(peak)
        self.sink.debug("listener", f"Peak: {peak.frequency_hz:.0f}Hz ({peak.symbol.value}) "
                                    f"@ {peak.amplitude_db:.1f}dB, SNR: {peak.snr_db:.1f}dB")
        return peak
