# config.py
"""
Configuration constants for the ultrasonic co-location handshake.
All timing values are in the unit named by their suffix (_MS, _S, _HZ).
"""

# --- PATTERN ---
NUM_PULSES = 6             # Symbols per verification round
PASS_THRESHOLD = NUM_PULSES - 1  # At most one missed symbol
MAX_PEAKS = 10             # Cap on submitted peaks (limits flooding)

# --- CARRIERS ---
FREQ_LOW = 18500           # Hz, symbol L
FREQ_HIGH = 20000          # Hz, symbol H
FREQ_THRESHOLD = 19250     # Classification boundary for diagnostics
FREQ_TOLERANCE_HZ = 120    # Peak must sit this close to a carrier

# --- EMITTER ---
DEFAULT_VOLUME = 0.75
PULSE_DURATION_MS = 80
PULSE_GAP_MS = 50
FADE_IN_MS = 2
FADE_OUT_MS = 8
SCHEDULE_LEAD_MS = 10      # Lead time between clock read and first pulse
EMIT_TAIL_MS = 50          # Envelope tail buffer after the last pulse
OUTPUT_SAMPLE_RATE = 48000
FILTER_CUTOFF_HZ = 17500
FILTER_STAGES = 4          # Cascaded 2nd-order highpass sections
WARMUP_PULSE_MS = 0        # 0 disables the AGC warm-up pulse
WARMUP_FREQ_HZ = 21500     # Above the detection band

# --- LISTENER ---
INPUT_SAMPLE_RATE = 48000
FFT_SIZE = 2048
BAND_LOW_HZ = 18000
BAND_HIGH_HZ = 21000
SNR_THRESHOLD = 2.0        # Linear ratio, converted to dB at use
NOISE_FLOOR_INIT_DB = -100.0
NOISE_FLOOR_ALPHA = 0.1    # EWMA weight of each new median
PEAK_MERGE_FREQ_HZ = 400
PEAK_MERGE_TIME_MS = 50    # Less than the pulse gap
FRAME_QUEUE_SIZE = 64

# --- HANDSHAKE (coordinator side) ---
BATCH_DEBOUNCE_MS = 200
RECHECK_DELAY_MS = 50
HANDSHAKE_TIMEOUT_S = 3.0
HANDSHAKE_POLL_MS = 50
PRE_EMIT_BUFFER_MS = 100
TRANSMISSION_LATENCY_MS = 150
MAX_EMIT_ATTEMPTS = 3
VERIFY_RETRY_MS = 250     # Re-dispatch after a failed verdict write

# --- HANDSHAKE (participant side) ---
RESPONSE_TIMEOUT_S = 5.0
READY_TIMEOUT_S = 30.0
MIC_READY_WAIT_S = 2.0
MIC_READY_POLL_MS = 50
MAX_ROUND_ATTEMPTS = 3

# --- AUTO-TEST ---
VOLUME_PRESETS = {
    1.0: "100%",
    0.75: "75%",
    0.5: "50%",
    0.25: "25%",
    0.0: "0% (Control)",
}
TESTS_PER_CONFIG = 10
AUTOTEST_MAX_RETRIES = 3
AUTOTEST_RETRY_DELAY_S = 2.0
AUTOTEST_PREROLL_MS = 200
AUTOTEST_SETTLE_MS = 300
AUTOTEST_REMOTE_TIMEOUT_S = 12.0

# --- PATHS ---
LOG_FILE = "./logs/session_log.jsonl"
LOG_ARCHIVE_DIR = "./logs/archive"
CAPTURE_DIR = "./data/captures"

# --- EVENT SINK ---
MEMORY_SINK_MAX_EVENTS = 500
