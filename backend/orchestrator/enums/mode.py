"""
Capture mode enumeration.

Mode answers: "Which audio sources are feeding the pipeline?"
"""

from __future__ import annotations

from enum import Enum


class CaptureMode(str, Enum):
    """
    Active audio sources of a capture handle.

    DUAL:
        Microphone and system/loopback audio are mixed.

    MIC_ONLY:
        System audio was not requested or could not be negotiated.
    """

    DUAL = "DUAL"
    MIC_ONLY = "MIC_ONLY"
