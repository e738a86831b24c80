"""
Connection state for the speech-to-text relay.

Tracked by the Stream Relay Client and mirrored to the UI collaborator
through on_connection_status.

Transitions (owned by adapters/asr/deepgram_streaming.py):
    IDLE         --start-------------> CONNECTING
    CONNECTING   --handshake ok------> CONNECTED
    CONNECTING   --handshake failed--> FAILED
    CONNECTED    --drop/close--------> RECONNECTING   (session active)
    RECONNECTING --handshake ok------> CONNECTED
    RECONNECTING --retries exhausted-> FAILED
    any          --stop--------------> CLOSED         (terminal)

Audio frames are only transmitted while CONNECTED.
"""
from enum import Enum


class ConnectionState(str, Enum):
    """Lifecycle of the single logical relay connection."""
    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    CLOSED = "CLOSED"
    FAILED = "FAILED"
