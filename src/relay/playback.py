"""
Playback duration estimate for self-speech suppression.

Twilio gives no "finished speaking" signal for TwiML pushed to a live call, so
the time our reply occupies the line is estimated from its word count. This is
a heuristic: long pauses or slow voices under-suppress, and <Play> audio of
unknown length only gets the floor.
"""

from __future__ import annotations

from typing import Any, Optional

from src.relay.config import get_config


def count_words(text: str) -> int:
    return len((text or "").split())


def estimate_playback_seconds(
    text: str,
    *,
    floor_seconds: float = 4.0,
    per_word_seconds: float = 0.2,
    base_seconds: float = 1.0,
) -> float:
    """max(floor, words * per_word + base)"""
    return max(floor_seconds, count_words(text) * per_word_seconds + base_seconds)


def estimate_from_config(text: str, config: Optional[Any] = None) -> float:
    if config is None:
        config = get_config()
    return estimate_playback_seconds(
        text,
        floor_seconds=config.speech_lock_floor_seconds,
        per_word_seconds=config.speech_lock_per_word_seconds,
        base_seconds=config.speech_lock_base_seconds,
    )
