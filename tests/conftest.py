"""
Pytest fixtures for the ultrasonic handshake test suite.

Provides:
- Temporary directories for recordings/logs
- In-memory event sink and shared store
- Simulated acoustic channel with speaker/microphone
- Deterministic WAV file generators
- Stub audio devices for controlled testing
"""

import sys
import asyncio
import pytest
import numpy as np
import soundfile as sf
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from config import INPUT_SAMPLE_RATE, FREQ_LOW, FREQ_HIGH
from comms import MemoryEventSink
from hardware_sim import AcousticChannel, SimulatedMicrophone, SimulatedSpeaker
from records import EmitterConfig, HardwareAcquisitionError
from store import SharedStateStore


# =============================================================================
# Directory Fixtures
# =============================================================================

@pytest.fixture
def temp_audio_dir(tmp_path):
    """Create a temporary directory for recordings."""
    audio_dir = tmp_path / "captures"
    audio_dir.mkdir()
    return audio_dir


@pytest.fixture
def temp_log_dir(tmp_path):
    """Create a temporary directory for log files."""
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    return log_dir


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def memory_sink():
    return MemoryEventSink()


@pytest.fixture
def store(memory_sink):
    return SharedStateStore(sink=memory_sink)


@pytest.fixture
def default_config():
    return EmitterConfig()


@pytest.fixture
def channel():
    return AcousticChannel()


@pytest.fixture
def speaker(channel):
    return SimulatedSpeaker(channel)


@pytest.fixture
def make_microphone(channel):
    """Factory for microphones on the shared channel (seeded noise)."""
    def _make(gain=0.1, **kwargs):
        kwargs.setdefault("seed", 1234)
        return SimulatedMicrophone(channel, gain=gain, **kwargs)
    return _make


@pytest.fixture
def fast_timers(monkeypatch):
    """Shorten handshake timers so failure paths run quickly."""
    monkeypatch.setattr("coordinator.BATCH_DEBOUNCE_MS", 20)
    monkeypatch.setattr("coordinator.HANDSHAKE_TIMEOUT_S", 0.5)
    monkeypatch.setattr("participant.RESPONSE_TIMEOUT_S", 0.5)
    monkeypatch.setattr("participant.MIC_READY_WAIT_S", 0.1)
    monkeypatch.setattr("autotest.AUTOTEST_RETRY_DELAY_S", 0.0)


# =============================================================================
# Audio Generation Fixtures
# =============================================================================

@pytest.fixture
def make_wav_file():
    """Factory fixture to create WAV files with specific characteristics."""
    def _make_wav(path, duration_sec, sample_rate=INPUT_SAMPLE_RATE,
                  amplitude=0.1, frequency=FREQ_HIGH, stereo=False, constant_value=None):
        """
        Create a WAV file.

        Args:
            path: Output file path
            duration_sec: Duration in seconds
            sample_rate: Sample rate (default 48kHz)
            amplitude: Peak amplitude (0-1)
            frequency: Tone frequency in Hz (ignored if constant_value set)
            stereo: If True, create stereo file (right channel silent)
            constant_value: If set, fill with this constant instead of sine
        """
        num_samples = int(sample_rate * duration_sec)

        if constant_value is not None:
            data = np.full(num_samples, constant_value, dtype=np.float32)
        else:
            t = np.arange(num_samples) / sample_rate
            data = (amplitude * np.sin(2 * np.pi * frequency * t)).astype(np.float32)

        if stereo:
            data = np.column_stack([data, np.zeros_like(data)])

        sf.write(path, data, sample_rate, subtype='FLOAT')
        return path

    return _make_wav


@pytest.fixture
def tone_frame():
    """One analysis frame holding a sine at `frequency`."""
    def _make(frequency=FREQ_LOW, amplitude=0.1, size=2048, sample_rate=INPUT_SAMPLE_RATE):
        t = np.arange(size) / sample_rate
        return (amplitude * np.sin(2 * np.pi * frequency * t)).astype(np.float32)
    return _make


# =============================================================================
# Stub Devices
# =============================================================================

class StubInputStream:
    """Yields preset frames, then ends."""

    def __init__(self, frames, sample_rate):
        self.frames = list(frames)
        self.sample_rate = sample_rate
        self.closed = False

    async def read(self):
        await asyncio.sleep(0)
        if self.closed or not self.frames:
            return None
        return self.frames.pop(0)

    def close(self):
        self.closed = True


class StubInputDevice:
    """
    Input device returning preset (samples, timestamp) frames.

    Usage:
        mic = StubInputDevice(frames)
        mic.deny = True  # open() now fails
    """

    def __init__(self, frames=(), sample_rate=INPUT_SAMPLE_RATE):
        self.frames = list(frames)
        self.sample_rate = sample_rate
        self.deny = False
        self.streams = []

    def open(self, frame_size):
        if self.deny:
            raise HardwareAcquisitionError("permission denied")
        stream = StubInputStream(self.frames, self.sample_rate)
        self.streams.append(stream)
        return stream


@pytest.fixture
def stub_input_device():
    return StubInputDevice
