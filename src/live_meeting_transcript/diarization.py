"""
Text-based speaker attribution for transcript segments.

Names mentioned in a segment ("Anna, what do you think?", "laut Peter") are
matched against known speakers to produce an advisory suggestion. Confirmed
segments are never touched; user confirmations feed the correction store.
"""

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .speaker_matcher import SpeakerMatcher, UnknownSpeakerLabeler
from .types import SpeakerMatch, SpeakerProfile, TranscriptSegment

logger = logging.getLogger(__name__)

_NAME = r"([A-ZÄÖÜ][a-zäöüß]+)"

HINT_PATTERNS = [
    # Direct address: "Anna, ..." / "Peter, kannst du ..." / "Tom can you ..."
    re.compile(
        r"(?:^|\s)" + _NAME
        + r"(?:,|\s+(?:was|wie|kannst|könntest|hast|bist|meinst|what|how|can|could|do|did|are|would|will)\b)"
    ),
    # "Ja, Anna" / "Thanks, Tom"
    re.compile(r"(?i:\b(?:ja|nein|okay|gut|richtig|genau|yes|right|exactly|sure|thanks|thank you)),?\s+" + _NAME),
    # "Anna sagt ..." / "Tom says ..."
    re.compile(_NAME + r"\s+(?:sagt|meint|denkt|fragt|antwortet|says|said|thinks|asks|asked|answers)\b"),
    # "laut Anna" / "according to Tom"
    re.compile(r"(?i:\b(?:laut|according to))\s+" + _NAME),
    # @mentions
    re.compile(r"@([A-Za-zÄÖÜäöüß]+)"),
]

EXCLUDED_HINTS = {
    'ja', 'nein', 'okay', 'gut', 'also', 'aber', 'und', 'oder', 'wenn', 'dann',
    'yes', 'well', 'but', 'and', 'then', 'the', 'this', 'that', 'what', 'how',
    'thanks', 'hello', 'sure', 'right', 'yeah', 'now', 'here', 'there', 'good',
}

_QUESTION = re.compile(r"\?")
_RESPONSE = re.compile(
    r"\b(?:ja|nein|genau|richtig|okay|stimmt|absolut|yes|yeah|exactly|right|sure|agreed|absolutely)[,.\s]",
    re.IGNORECASE,
)


def quick_detect_speaker_hints(text: str) -> List[str]:
    """Names that look like speakers or addressees, in order of appearance per pattern."""
    hints: List[str] = []
    if not text:
        return hints
    for pattern in HINT_PATTERNS:
        for match in pattern.finditer(text):
            name = match.group(1)
            if name and len(name) > 2 and name.lower() not in EXCLUDED_HINTS and name not in hints:
                hints.append(name)
    return hints


def estimate_speaker_count(text: str) -> int:
    """Rough speaker count from question/response density."""
    interaction_score = len(_QUESTION.findall(text or "")) + len(_RESPONSE.findall(text or ""))
    if interaction_score == 0:
        return 1
    if interaction_score <= 2:
        return 2
    if interaction_score <= 5:
        return 3
    return min(6, interaction_score // 2)


@dataclass
class DiarizationResult:
    segments: List[TranscriptSegment]
    unknown_labels: Dict[str, Tuple[str, str]] = field(default_factory=dict)
    detected_speaker_count: int = 1


def best_hint_match(
    text: str,
    speakers: Sequence[SpeakerProfile],
    matcher: SpeakerMatcher,
    participant_ids: Optional[Iterable[str]] = None,
) -> Tuple[Optional[SpeakerMatch], List[str]]:
    """Best match over all name hints in ``text``, plus the hints nobody matched."""
    hints = quick_detect_speaker_hints(text)
    matches = matcher.match_many(hints, speakers, participant_ids)
    unmatched = [name for name in hints if name not in matches]
    best = max(matches.values(), key=lambda m: m.confidence, default=None)
    return best, unmatched


def suggest_speaker(
    segment: TranscriptSegment,
    speakers: Sequence[SpeakerProfile],
    matcher: SpeakerMatcher,
    participant_ids: Optional[Iterable[str]] = None,
) -> TranscriptSegment:
    """Attach an advisory speaker suggestion to an unconfirmed segment."""
    if segment.confirmed:
        return segment
    match, _ = best_hint_match(segment.text, speakers, matcher, participant_ids)
    if match is None:
        return segment
    return replace(segment, suggested_speaker_id=match.speaker_id, confidence=match.confidence)


def diarize_segments(
    segments: Sequence[TranscriptSegment],
    speakers: Sequence[SpeakerProfile],
    matcher: SpeakerMatcher,
    participant_ids: Optional[Iterable[str]] = None,
    labeler: Optional[UnknownSpeakerLabeler] = None,
) -> DiarizationResult:
    """One diarization pass over a transcript; placeholder labels restart at Speaker 1."""
    labeler = labeler or UnknownSpeakerLabeler()
    labeler.reset()
    participant_ids = list(participant_ids or ())

    result = DiarizationResult(segments=[])
    for segment in segments:
        if segment.confirmed and segment.speaker_id:
            result.segments.append(segment)
            continue

        match, unmatched = best_hint_match(segment.text, speakers, matcher, participant_ids)
        for name in unmatched:
            if name not in result.unknown_labels:
                result.unknown_labels[name] = labeler.next_label()

        if match is not None:
            segment = replace(segment, suggested_speaker_id=match.speaker_id, confidence=match.confidence)
        result.segments.append(segment)

    result.detected_speaker_count = estimate_speaker_count(" ".join(s.text for s in segments))
    logger.debug(
        f"Diarized {len(result.segments)} segments, "
        f"{len(result.unknown_labels)} unknown speakers"
    )
    return result


def confirm_speaker_assignment(
    segment: TranscriptSegment,
    speaker_id: str,
    matcher: Optional[SpeakerMatcher] = None,
) -> TranscriptSegment:
    """User confirmation. Overriding a different suggestion teaches the matcher."""
    if matcher is not None and segment.suggested_speaker_id and segment.suggested_speaker_id != speaker_id:
        for name in quick_detect_speaker_hints(segment.text):
            matcher.record_correction(name, speaker_id, segment.text[:100])

    return replace(
        segment,
        speaker_id=speaker_id,
        suggested_speaker_id=None,
        confirmed=True,
        confidence=1.0,
    )


def reject_speaker_suggestion(segment: TranscriptSegment) -> TranscriptSegment:
    return replace(segment, suggested_speaker_id=None, confirmed=False, confidence=0.5)


def batch_update_speakers(
    segments: Sequence[TranscriptSegment],
    updates: Dict[str, str],
    matcher: Optional[SpeakerMatcher] = None,
) -> List[TranscriptSegment]:
    """Confirm ``segment_id -> speaker_id`` for every listed segment in one pass."""
    updated = []
    for segment in segments:
        speaker_id = updates.get(segment.id)
        if speaker_id is not None:
            segment = confirm_speaker_assignment(segment, speaker_id, matcher)
        updated.append(segment)

    missing = set(updates) - {segment.id for segment in segments}
    if missing:
        logger.warning(f"Speaker updates for unknown segments ignored: {sorted(missing)}")
    return updated


AUTO_ASSIGN_CONFIDENCE = 0.7


def auto_assign_speakers(segments: Sequence[TranscriptSegment]) -> List[TranscriptSegment]:
    """
    Suggest speakers learned from the confirmed part of the transcript.

    Every name hint in a confirmed segment is tied to that segment's speaker
    (later confirmations win). Open segments mentioning one of those names
    get the tied speaker as a suggestion at AUTO_ASSIGN_CONFIDENCE. Segments
    that are confirmed or already have a speaker are left alone.
    """
    learned: Dict[str, str] = {}
    for segment in segments:
        if segment.confirmed and segment.speaker_id:
            for hint in quick_detect_speaker_hints(segment.text):
                learned[hint.lower()] = segment.speaker_id

    if not learned:
        return list(segments)

    assigned = []
    for segment in segments:
        if not (segment.confirmed or segment.speaker_id):
            for hint in quick_detect_speaker_hints(segment.text):
                speaker_id = learned.get(hint.lower())
                if speaker_id:
                    segment = replace(
                        segment, suggested_speaker_id=speaker_id, confidence=AUTO_ASSIGN_CONFIDENCE
                    )
                    break
        assigned.append(segment)
    return assigned


def speaker_display_name(
    segment: TranscriptSegment,
    speakers: Sequence[SpeakerProfile],
    show_suggestion: bool = True,
) -> Tuple[Optional[str], bool]:
    """(name, is_suggestion) for a segment; name is None when nobody is known."""
    by_id = {speaker.id: speaker for speaker in speakers}
    if segment.speaker_id and segment.speaker_id in by_id:
        return by_id[segment.speaker_id].name, False
    if show_suggestion and segment.suggested_speaker_id in by_id:
        return by_id[segment.suggested_speaker_id].name, True
    return None, False
