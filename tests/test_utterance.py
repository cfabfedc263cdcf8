"""
Tests for utterance aggregation and playback estimation.
"""

import pytest

from src.relay.playback import count_words, estimate_from_config, estimate_playback_seconds
from src.relay.config import get_config
from src.relay.utterance import UtteranceAggregator


class TestUtteranceAggregator:
    def test_fragments_join_with_spaces(self):
        aggregator = UtteranceAggregator()
        aggregator.append("book a")
        aggregator.append(" table ")
        assert aggregator.text == "book a table"

    def test_take_clears(self):
        aggregator = UtteranceAggregator()
        aggregator.append("book a table")
        assert aggregator.take() == "book a table"
        assert not aggregator
        assert aggregator.take() is None

    def test_noise_floor_discards(self):
        aggregator = UtteranceAggregator(min_chars=2)
        aggregator.append("a")
        assert aggregator.take() is None
        assert aggregator.discarded == 1
        assert not aggregator

    def test_blank_fragments_ignored(self):
        aggregator = UtteranceAggregator()
        aggregator.append("   ")
        aggregator.append("")
        assert not aggregator

    def test_extend(self):
        aggregator = UtteranceAggregator()
        aggregator.extend(["hello", "I need", "a table"])
        assert aggregator.text == "hello I need a table"


class TestPlaybackEstimate:
    def test_count_words(self):
        assert count_words("one two  three") == 3
        assert count_words("") == 0

    def test_floor_applies_to_short_replies(self):
        assert estimate_playback_seconds("Sure.") == 4.0
        assert estimate_playback_seconds("") == 4.0

    def test_long_reply_scales_with_words(self):
        text = " ".join(["word"] * 50)
        assert estimate_playback_seconds(text) == pytest.approx(50 * 0.2 + 1.0)

    def test_estimate_from_config(self, monkeypatch):
        monkeypatch.setenv("SPEECH_LOCK_FLOOR_SECONDS", "2.5")
        get_config.cache_clear()
        assert estimate_from_config("ok") == 2.5
