"""
Tests for the content filter.
"""

import numpy as np
import pytest

from live_meeting_transcript.chunker import encode_wav
from live_meeting_transcript.content_filter import (
    ContentFilter,
    MinConfidenceRule,
    MinLengthRule,
    PatternRule,
    ResultRule,
    silence_ratio,
)
from live_meeting_transcript.types import AudioChunk


def chunk_from(samples, sample_rate=16000):
    return AudioChunk(id="c", payload=encode_wav(samples, sample_rate), start_time_ms=0, end_time_ms=1000)


class TestSilenceRatio:

    def test_all_silence(self):
        payload = encode_wav(np.zeros(16000, dtype=np.float32), 16000)
        assert silence_ratio(payload) == pytest.approx(1.0)

    def test_all_voiced(self, noise):
        payload = encode_wav(noise(1000), 16000)
        assert silence_ratio(payload) == pytest.approx(0.0)

    def test_partial(self, noise):
        samples = np.concatenate([noise(400), np.zeros(9600, dtype=np.float32)])
        payload = encode_wav(samples, 16000)
        assert silence_ratio(payload) == pytest.approx(0.6)

    def test_undecodable_payload_fails_open(self):
        assert silence_ratio(b"definitely not audio") == 0.0


class TestPreFilter:

    def test_silent_chunk_rejected(self, silent_chunk):
        assert ContentFilter().should_transcribe(silent_chunk) is False

    def test_mostly_silent_rejected(self, noise):
        samples = np.concatenate([noise(200), np.zeros(12800, dtype=np.float32)])
        assert ContentFilter().should_transcribe(chunk_from(samples)) is False

    def test_speech_with_pauses_accepted(self, noise):
        samples = np.concatenate([noise(500), np.zeros(8000, dtype=np.float32)])
        assert ContentFilter().should_transcribe(chunk_from(samples)) is True


class TestPostFilter:

    @pytest.mark.parametrize("text", [
        "Thanks for watching!",
        "Vielen Dank fürs Zusehen",
        "Bitte abonnieren und die Glocke aktivieren",
        "♪ ♪ ♪",
        "[Musik]",
        "(applause)",
        "Untertitel im Auftrag des ZDF erstellt",
        "© 2023 Some Channel",
        "Welcome back to my channel",
        "Mit diesem Shake kannst du schnell abnehmen",
    ])
    def test_hallucinations_rejected(self, text):
        assert ContentFilter().check_result(text, 0.95) is not None

    def test_low_confidence_rejected(self):
        reason = ContentFilter().check_result("We should ship on Friday.", 0.3)
        assert "confidence" in reason

    def test_short_text_rejected(self):
        assert ContentFilter().check_result("Hm.", 0.95) is not None

    def test_normal_speech_accepted(self):
        assert ContentFilter().check_result("Let's review the budget for next quarter.", 0.8) is None

    def test_missing_confidence_defaults_to_accept(self):
        assert ContentFilter().check_result("Let's review the budget.", None) is None
        assert ContentFilter().check_result("Let's review the budget.", float("nan")) is None


class TestRules:

    def test_custom_rule(self):
        class NoProfanity(ResultRule):
            name = "profanity"

            def check(self, text, confidence):
                return "profanity" if "darn" in text.lower() else None

        content_filter = ContentFilter()
        content_filter.add_rule(NoProfanity())

        assert content_filter.check_result("Oh darn, the build failed again", 0.9) == "profanity"

    def test_added_pattern(self):
        rule = PatternRule([])
        rule.add_pattern(r"lorem ipsum")
        content_filter = ContentFilter(rules=[rule])

        assert content_filter.check_result("Lorem ipsum dolor sit amet", 0.9) is not None
        assert content_filter.check_result("Thanks for watching", 0.1) is None

    def test_rule_thresholds(self):
        assert MinConfidenceRule(0.5).check("text", 0.49) is not None
        assert MinConfidenceRule(0.5).check("text", 0.5) is None
        assert MinLengthRule(5).check("abcd", 1.0) is not None
        assert MinLengthRule(5).check("abcde", 1.0) is None
