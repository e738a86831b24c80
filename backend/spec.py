"""
SPEC-AS-CONSTANTS
-----------------
Single source of truth for all behavioral invariants in the pipeline.

Rules:
- If changing a value changes runtime behavior, it belongs here.
- No magic numbers elsewhere in the codebase.
- Other modules MUST import from this file.
"""

from __future__ import annotations

from typing import Final, Tuple

# =============================================================================
# Audio Format (PCM16 mono @ 16kHz, 4096-sample frames)
# =============================================================================

AUDIO_SAMPLE_RATE_HZ: Final[int] = 16_000
AUDIO_CHANNELS: Final[int] = 1
AUDIO_SAMPLE_WIDTH_BYTES: Final[int] = 2  # PCM16 (signed 16-bit)

AUDIO_SAMPLES_PER_FRAME: Final[int] = 4096
AUDIO_BYTES_PER_FRAME_PCM: Final[int] = AUDIO_SAMPLES_PER_FRAME * AUDIO_SAMPLE_WIDTH_BYTES
AUDIO_FRAME_DURATION_S: Final[float] = AUDIO_SAMPLES_PER_FRAME / AUDIO_SAMPLE_RATE_HZ

# Per-source gain applied before mixing
MIC_GAIN: Final[float] = 1.0
SYSTEM_AUDIO_GAIN: Final[float] = 0.8

# Capture devices are opened at the pipeline rate; PortAudio/the host
# resamples. Other rates are converted by a stateful streaming resampler.
CAPTURE_DEFAULT_SAMPLE_RATE_HZ: Final[int] = AUDIO_SAMPLE_RATE_HZ

# System samples buffered ahead of the mic cadence (seconds @ 16kHz)
SYSTEM_AUDIO_BUFFER_MAX_S: Final[float] = 2.0

# Device-name fragments that identify loopback-capable inputs
LOOPBACK_DEVICE_HINTS: Final[Tuple[str, ...]] = (
    "monitor", "loopback", "stereo mix", "what u hear", "blackhole", "soundflower",
)

# =============================================================================
# Binary WebSocket Frame Format (remote audio capture)
# =============================================================================
# Client → Server (mic audio): 4B seq_num + PCM frame
C2S_SEQ_NUM_BYTES: Final[int] = 4
C2S_FRAME_BYTES_TOTAL: Final[int] = C2S_SEQ_NUM_BYTES + AUDIO_BYTES_PER_FRAME_PCM

SEQ_NUM_START: Final[int] = 1
SEQ_NUM_MAX: Final[int] = 2**32 - 1  # u32 wraparound

# =============================================================================
# Stream Relay (speech-to-text backend connection)
# =============================================================================

RELAY_URL: Final[str] = "wss://api.deepgram.com/v1/listen"
RELAY_DEFAULT_MODEL: Final[str] = "nova-2"
RELAY_DEFAULT_LANGUAGE: Final[str] = "en-US"
RELAY_ENDPOINTING_MS: Final[int] = 300
RELAY_UTTERANCE_END_MS: Final[int] = 1000

RELAY_CONNECT_TIMEOUT_MS: Final[int] = 10_000
RELAY_MAX_RECONNECT_ATTEMPTS: Final[int] = 3
RELAY_RECONNECT_BASE_DELAY_MS: Final[int] = 1_000  # delay = base * attempt

# Outbox between the frame producer and the websocket sender
RELAY_OUTBOX_MAX_S: Final[float] = 2.0

# Log one FRAME_DROPPED event per this many drops
RELAY_DROP_LOG_EVERY: Final[int] = 50

RELAY_AUTH_REJECT_STATUS: Final[Tuple[int, ...]] = (401, 403)

# =============================================================================
# Transcript Normalizer
# =============================================================================

NORMALIZER_SHORT_HORIZON_MS: Final[int] = 25
NORMALIZER_HISTORY_SIZE: Final[int] = 5
NORMALIZER_SUBSTRING_RATIO: Final[float] = 0.5
NORMALIZER_MIN_OUTPUT_CHARS: Final[int] = 2
# Cleaning repeats until the text stops changing, at most this many times
NORMALIZER_MAX_PASSES: Final[int] = 10

PHRASE_DEDUP_MAX_WORDS: Final[int] = 5
PHRASE_DEDUP_MIN_WORDS: Final[int] = 2
WORD_DEDUP_LOOKBACK: Final[int] = 2
WORD_DEDUP_MIN_STEM_CHARS: Final[int] = 3

MORPHOLOGICAL_SUFFIXES: Final[Tuple[str, ...]] = (
    "ed", "ing", "er", "est", "ly", "ness", "ment",
    "ful", "less", "ish", "ous", "ive", "able", "ible",
)

ABBREVIATIONS: Final[Tuple[str, ...]] = (
    "Mr", "Mrs", "Dr", "Ms", "Prof", "Sr", "Jr",
)

# =============================================================================
# Ingestion Coordinator
# =============================================================================

HASH_GUARD_TTL_MS: Final[int] = 5_000
HASH_GUARD_CLEANUP_THRESHOLD: Final[int] = 100
HASH_GUARD_SAMPLE_CHARS: Final[int] = 20
HASH_GUARD_DIGEST_BYTES: Final[int] = 16

TRANSCRIPT_LOG_MAX_RECORDS: Final[int] = 500
# Exceeding the cap evicts the oldest half
TRANSCRIPT_LOG_KEEP_RECORDS: Final[int] = TRANSCRIPT_LOG_MAX_RECORDS // 2

MEANINGFUL_MIN_WORDS: Final[int] = 3
MEANINGFUL_MIN_CHARS: Final[int] = 15
FILLER_TOKENS: Final[Tuple[str, ...]] = (
    "hi", "hello", "okay", "yes", "no", "um", "uh", "ah", "oh", "well",
)

# =============================================================================
# AI Dispatch Scheduler
# =============================================================================

AI_DEBOUNCE_MS: Final[int] = 3_000
AI_SUGGESTION_TIMEOUT_MS: Final[int] = 3_000
AI_TODO_TIMEOUT_MS: Final[int] = 5_000

AI_RATE_LIMIT_PER_MINUTE: Final[int] = 30
AI_RATE_LIMIT_WINDOW_S: Final[float] = 60.0
AI_MIN_REQUEST_SPACING_MS: Final[int] = 300

AI_MAX_TODOS: Final[int] = 3
AI_TODO_MIN_CHARS: Final[int] = 6
AI_MAX_INSIGHTS: Final[int] = 2
AI_KEYWORD_TODO_MIN_CHARS: Final[int] = 11

AI_TODO_TEMPERATURE: Final[float] = 0.2
AI_SUGGESTION_TEMPERATURE: Final[float] = 0.3
AI_TODO_MAX_TOKENS: Final[int] = 600
AI_SUGGESTION_MAX_TOKENS: Final[int] = 800

# Questions asked by the user during the call (answered with a streamed reply)
AI_CHAT_TIMEOUT_MS: Final[int] = 30_000
AI_CHAT_TEMPERATURE: Final[float] = 0.7
AI_CHAT_MAX_TOKENS: Final[int] = 800
AI_CHAT_MAX_QUERY_CHARS: Final[int] = 2_000
AI_KEYWORD_CHAT_MAX_LINES: Final[int] = 3

# =============================================================================
# Conversation Context (trailing transcript sent with AI requests)
# =============================================================================

MAX_CONTEXT_TURNS: Final[int] = 8
MAX_CONTEXT_CHARS: Final[int] = 6_000

# Truncation rule:
# While (turn_count > MAX_CONTEXT_TURNS) OR (total_chars > MAX_CONTEXT_CHARS):
#     drop oldest turn

# =============================================================================
# Session Event Delivery
# =============================================================================

SESSION_EVENT_Q_MAX_EVENTS: Final[int] = 1_000
SESSION_STOP_DRAIN_TIMEOUT_S: Final[float] = 2.0
