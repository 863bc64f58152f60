"""
Tests for text-based speaker attribution.
"""

import pytest

from live_meeting_transcript.diarization import (
    auto_assign_speakers,
    batch_update_speakers,
    confirm_speaker_assignment,
    diarize_segments,
    estimate_speaker_count,
    quick_detect_speaker_hints,
    reject_speaker_suggestion,
    speaker_display_name,
    suggest_speaker,
)
from live_meeting_transcript.speaker_matcher import SpeakerMatcher, UnknownSpeakerLabeler
from live_meeting_transcript.types import TranscriptSegment


def segment(text, segment_id="seg", **kwargs):
    return TranscriptSegment(segment_id, text, 0, 1000, **kwargs)


class TestHints:

    @pytest.mark.parametrize("text, expected", [
        ("Anna, what do you think?", ["Anna"]),
        ("Peter, kannst du den Bildschirm teilen?", ["Peter"]),
        ("Tom can you hear me", ["Tom"]),
        ("Thanks, Tom", ["Tom"]),
        ("Ja, Anna", ["Anna"]),
        ("Danke. Laut Peter ist das fertig.", ["Peter"]),
        ("According to Anna the release slipped.", ["Anna"]),
        ("Peter sagt, das passt.", ["Peter"]),
        ("ping @tom about it", ["tom"]),
    ])
    def test_detects_names(self, text, expected):
        assert quick_detect_speaker_hints(text) == expected

    def test_filler_words_excluded(self):
        assert quick_detect_speaker_hints("Okay, let's start. Well, nothing new.") == []

    def test_short_names_ignored(self):
        assert quick_detect_speaker_hints("Al, can you check?") == []

    def test_duplicates_removed(self):
        assert quick_detect_speaker_hints("Anna, hi. Anna, again. Thanks, Anna") == ["Anna"]

    def test_empty(self):
        assert quick_detect_speaker_hints("") == []


class TestSpeakerCount:

    def test_monologue(self):
        assert estimate_speaker_count("We shipped the release last week.") == 1
        assert estimate_speaker_count("") == 1

    def test_short_exchange(self):
        assert estimate_speaker_count("Is it done? Yes, it is.") == 2

    def test_busy_discussion_capped(self):
        assert estimate_speaker_count("A? B? C? D? E? F? G? H?") == 4
        assert estimate_speaker_count("?" * 40) == 6


class TestSuggestions:

    def test_suggest_speaker(self, speakers):
        result = suggest_speaker(segment("Anna, what do you think?"), speakers, SpeakerMatcher())

        assert result.suggested_speaker_id == "spk-anna"
        assert result.confidence == 1.0
        assert result.speaker_id is None
        assert result.confirmed is False

    def test_confirmed_segment_untouched(self, speakers):
        confirmed = segment("Anna, what do you think?", speaker_id="spk-tom", confirmed=True, confidence=1.0)
        assert suggest_speaker(confirmed, speakers, SpeakerMatcher()) is confirmed

    def test_no_hint_no_suggestion(self, speakers):
        plain = segment("The numbers look fine.")
        assert suggest_speaker(plain, speakers, SpeakerMatcher()) is plain


class TestDiarizeSegments:

    def test_pass(self, speakers):
        segments = [
            segment("Anna, what do you think?", "s1"),
            segment("Zoltan, can you hear me?", "s2", speaker_id="spk-tom", confirmed=True, confidence=1.0),
            segment("Bernd, can you hear me? Zoltan, too?", "s3"),
        ]

        result = diarize_segments(segments, speakers, SpeakerMatcher())

        assert [s.id for s in result.segments] == ["s1", "s2", "s3"]
        assert result.segments[0].suggested_speaker_id == "spk-anna"
        assert result.segments[1] is segments[1]
        assert result.segments[2].suggested_speaker_id is None
        assert result.unknown_labels == {
            "Bernd": ("Speaker 1", "#9CA3AF"),
            "Zoltan": ("Speaker 2", "#6B7280"),
        }
        assert result.detected_speaker_count == 3

    def test_labels_restart_each_pass(self, speakers):
        labeler = UnknownSpeakerLabeler()
        segments = [segment("Bernd, can you hear me?")]

        first = diarize_segments(segments, speakers, SpeakerMatcher(), labeler=labeler)
        second = diarize_segments(segments, speakers, SpeakerMatcher(), labeler=labeler)

        assert first.unknown_labels["Bernd"][0] == "Speaker 1"
        assert second.unknown_labels["Bernd"][0] == "Speaker 1"

    def test_participants_preferred(self, speakers):
        result = diarize_segments([segment("Petr, can you share?")], speakers, SpeakerMatcher(), ["spk-peter"])
        assert result.segments[0].confidence == pytest.approx(1.0)


class TestConfirmation:

    def test_confirm_overriding_suggestion_records_correction(self):
        matcher = SpeakerMatcher()
        suggested = segment("Peter, can you share your screen?", suggested_speaker_id="spk-peter", confidence=0.8)

        confirmed = confirm_speaker_assignment(suggested, "spk-tom", matcher)

        assert confirmed.speaker_id == "spk-tom"
        assert confirmed.suggested_speaker_id is None
        assert confirmed.confirmed is True
        assert confirmed.confidence == 1.0

        corrections = list(matcher.corrections)
        assert len(corrections) == 1
        assert corrections[0].original_name == "Peter"
        assert corrections[0].corrected_speaker_id == "spk-tom"
        assert corrections[0].context_snippet == "Peter, can you share your screen?"

    def test_confirm_matching_suggestion_records_nothing(self):
        matcher = SpeakerMatcher()
        suggested = segment("Peter, can you share?", suggested_speaker_id="spk-peter", confidence=0.8)

        confirm_speaker_assignment(suggested, "spk-peter", matcher)

        assert len(matcher.corrections) == 0

    def test_context_snippet_truncated(self):
        matcher = SpeakerMatcher()
        text = "Peter, " + "x" * 200
        confirm_speaker_assignment(segment(text, suggested_speaker_id="spk-peter"), "spk-tom", matcher)

        assert len(list(matcher.corrections)[0].context_snippet) == 100

    def test_reject(self):
        suggested = segment("Peter, hi", suggested_speaker_id="spk-peter", confidence=0.8)
        rejected = reject_speaker_suggestion(suggested)

        assert rejected.suggested_speaker_id is None
        assert rejected.confirmed is False
        assert rejected.confidence == 0.5


class TestBatchUpdate:

    def test_confirms_listed_segments_only(self):
        matcher = SpeakerMatcher()
        segments = [
            segment("Peter, can you share?", "s1", suggested_speaker_id="spk-peter", confidence=0.8),
            segment("Sounds good", "s2", suggested_speaker_id="spk-anna", confidence=0.6),
        ]

        updated = batch_update_speakers(segments, {"s1": "spk-tom"}, matcher)

        assert [s.id for s in updated] == ["s1", "s2"]
        assert updated[0].speaker_id == "spk-tom"
        assert updated[0].confirmed is True
        assert updated[0].suggested_speaker_id is None
        assert updated[1] == segments[1]
        assert list(matcher.corrections)[0].corrected_speaker_id == "spk-tom"

    def test_unknown_ids_ignored(self):
        segments = [segment("Hello", "s1")]

        updated = batch_update_speakers(segments, {"ghost": "spk-tom"})

        assert updated == segments


class TestAutoAssign:

    def test_learns_from_confirmed_segments(self):
        segments = [
            segment("Peter, can you share your screen?", "s1", speaker_id="spk-tom", confirmed=True, confidence=1.0),
            segment("Thanks, Peter", "s2"),
            segment("ping @peter about it", "s3"),
            segment("Tom can you hear me", "s4"),
            segment("Peter, one more thing", "s5", speaker_id="spk-anna"),
        ]

        assigned = auto_assign_speakers(segments)

        assert assigned[0] == segments[0]
        assert assigned[1].suggested_speaker_id == "spk-tom"
        assert assigned[1].confidence == pytest.approx(0.7)
        assert assigned[1].confirmed is False
        assert assigned[1].speaker_id is None
        assert assigned[2].suggested_speaker_id == "spk-tom"
        assert assigned[3] == segments[3]
        assert assigned[4] == segments[4]

    def test_later_confirmation_wins(self):
        segments = [
            segment("Peter, hi", "s1", speaker_id="spk-tom", confirmed=True),
            segment("Peter, hello again", "s2", speaker_id="spk-anna", confirmed=True),
            segment("Thanks, Peter", "s3"),
        ]

        assert auto_assign_speakers(segments)[2].suggested_speaker_id == "spk-anna"

    def test_nothing_confirmed_nothing_learned(self):
        segments = [segment("Thanks, Peter", "s1"), segment("Anna, what do you think?", "s2")]

        assert auto_assign_speakers(segments) == segments


class TestDisplayName:

    def test_confirmed_name(self, speakers):
        assert speaker_display_name(segment("hi", speaker_id="spk-tom"), speakers) == ("Tom", False)

    def test_suggestion(self, speakers):
        suggested = segment("hi", suggested_speaker_id="spk-anna")
        assert speaker_display_name(suggested, speakers) == ("Anna Schmidt", True)
        assert speaker_display_name(suggested, speakers, show_suggestion=False) == (None, False)

    def test_unknown(self, speakers):
        assert speaker_display_name(segment("hi"), speakers) == (None, False)
