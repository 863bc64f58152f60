"""
Fuzzy matching of detected speaker names against known speaker profiles.

Matching is best-effort: it produces suggestions, never confirmed
assignments. Past user corrections take priority over string similarity.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .types import Correction, SpeakerMatch, SpeakerProfile, TranscriptSegment

logger = logging.getLogger(__name__)

MIN_MATCH_CONFIDENCE = 0.6
PARTICIPANT_MIN_CONFIDENCE = 0.5
PARTICIPANT_BONUS = 0.2
CORRECTION_SIMILARITY = 0.8
CORRECTION_CONFIDENCE = 0.9
CONTAINMENT_SCORE = 0.8

UNKNOWN_SPEAKER_COLORS = ["#9CA3AF", "#6B7280", "#4B5563"]


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def string_similarity(a: str, b: str) -> float:
    """Similarity in [0, 1]; containment of one name in the other scores 0.8."""
    s1 = (a or "").strip().lower()
    s2 = (b or "").strip().lower()

    if s1 == s2:
        return 1.0
    if not s1 or not s2:
        return 0.0
    if s1 in s2 or s2 in s1:
        return CONTAINMENT_SCORE

    return 1.0 - levenshtein(s1, s2) / max(len(s1), len(s2))


class CorrectionStore:
    """Append-only record of user speaker corrections.

    When ``path`` is given, corrections are loaded from and appended to a
    JSON-lines file so they survive between sessions.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else None
        self._corrections: List[Correction] = []
        self._lock = threading.Lock()
        if self.path and self.path.exists():
            self._load()

    def _load(self):
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    data = json.loads(line)
                    self._append(Correction(
                        original_name=data['original_name'],
                        corrected_speaker_id=data['corrected_speaker_id'],
                        context_snippet=data.get('context_snippet', ''),
                    ))
            logger.info(f"Loaded {len(self._corrections)} speaker corrections from {self.path}")
        except (OSError, ValueError, KeyError) as e:
            logger.error(f"Failed to load corrections from {self.path}: {e}")

    def _append(self, correction: Correction) -> bool:
        for existing in self._corrections:
            if (existing.original_name == correction.original_name
                    and existing.corrected_speaker_id == correction.corrected_speaker_id):
                return False
        self._corrections.append(correction)
        return True

    def record(self, original_name: str, corrected_speaker_id: str, context_snippet: str = "") -> bool:
        """Store a correction. Returns False for an exact (name, speaker) duplicate."""
        correction = Correction(original_name, corrected_speaker_id, context_snippet)
        with self._lock:
            added = self._append(correction)
            if added and self.path:
                self._persist(correction)
        if added:
            logger.debug(f"Recorded correction {original_name!r} -> {corrected_speaker_id}")
        return added

    def _persist(self, correction: Correction):
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'a', encoding='utf-8') as f:
                f.write(json.dumps({
                    'original_name': correction.original_name,
                    'corrected_speaker_id': correction.corrected_speaker_id,
                    'context_snippet': correction.context_snippet,
                }, ensure_ascii=False) + '\n')
        except OSError as e:
            logger.error(f"Failed to persist correction to {self.path}: {e}")

    def find(self, name: str) -> Optional[Correction]:
        """First correction whose original name is close to ``name``."""
        with self._lock:
            for correction in self._corrections:
                if string_similarity(correction.original_name, name) > CORRECTION_SIMILARITY:
                    return correction
        return None

    def __len__(self):
        with self._lock:
            return len(self._corrections)

    def __iter__(self):
        with self._lock:
            return iter(list(self._corrections))


class SpeakerMatcher:
    """Suggests known speakers for names detected in transcript text."""

    def __init__(self, corrections: Optional[CorrectionStore] = None):
        self.corrections = corrections if corrections is not None else CorrectionStore()

    @staticmethod
    def find_best_match(
        detected_name: str,
        speakers: Sequence[SpeakerProfile],
        min_confidence: float = MIN_MATCH_CONFIDENCE,
    ) -> Optional[SpeakerMatch]:
        """Best fuzzy match over display names and e-mail local parts."""
        if not detected_name or not speakers:
            return None

        best: Optional[SpeakerMatch] = None
        best_score = 0.0
        for speaker in speakers:
            score = string_similarity(detected_name, speaker.name)
            if speaker.email:
                score = max(score, string_similarity(detected_name, speaker.email.split('@')[0]))

            if score > best_score and score >= min_confidence:
                best_score = score
                best = SpeakerMatch(
                    speaker_id=speaker.id,
                    speaker_name=speaker.name,
                    confidence=score,
                    reason="exact_name" if score == 1.0 else "fuzzy_name",
                )
        return best

    def from_corrections(self, detected_name: str, speakers: Sequence[SpeakerProfile]) -> Optional[SpeakerMatch]:
        correction = self.corrections.find(detected_name)
        if correction is None:
            return None
        for speaker in speakers:
            if speaker.id == correction.corrected_speaker_id:
                return SpeakerMatch(
                    speaker_id=speaker.id,
                    speaker_name=speaker.name,
                    confidence=CORRECTION_CONFIDENCE,
                    reason="user_assigned",
                )
        return None

    def match(
        self,
        detected_name: str,
        speakers: Sequence[SpeakerProfile],
        participant_ids: Optional[Iterable[str]] = None,
    ) -> Optional[SpeakerMatch]:
        """Corrections first, then meeting participants (with bonus), then everyone."""
        if not detected_name:
            return None

        corrected = self.from_corrections(detected_name, speakers)
        if corrected:
            return corrected

        participant_ids = set(participant_ids or ())
        if participant_ids:
            participants = [s for s in speakers if s.id in participant_ids]
            match = self.find_best_match(detected_name, participants, PARTICIPANT_MIN_CONFIDENCE)
            if match:
                return SpeakerMatch(
                    speaker_id=match.speaker_id,
                    speaker_name=match.speaker_name,
                    confidence=min(match.confidence + PARTICIPANT_BONUS, 1.0),
                    reason=match.reason,
                )

        return self.find_best_match(detected_name, speakers)

    def match_many(
        self,
        detected_names: Iterable[Optional[str]],
        speakers: Sequence[SpeakerProfile],
        participant_ids: Optional[Iterable[str]] = None,
    ) -> Dict[str, SpeakerMatch]:
        participant_ids = list(participant_ids or ())
        matches: Dict[str, SpeakerMatch] = {}
        for name in detected_names:
            if name and name not in matches:
                match = self.match(name, speakers, participant_ids)
                if match:
                    matches[name] = match
        return matches

    def record_correction(self, original_name: str, corrected_speaker_id: str, context_snippet: str = "") -> bool:
        return self.corrections.record(original_name, corrected_speaker_id, context_snippet)


class UnknownSpeakerLabeler:
    """Sequential placeholder labels for speakers nobody could identify."""

    def __init__(self, colors: Sequence[str] = UNKNOWN_SPEAKER_COLORS):
        self.colors = list(colors)
        self._counter = 0

    def next_label(self) -> Tuple[str, str]:
        color = self.colors[self._counter % len(self.colors)]
        self._counter += 1
        return f"Speaker {self._counter}", color

    def reset(self) -> None:
        self._counter = 0


def suggest_speakers_for_meeting(
    speakers: Sequence[SpeakerProfile],
    participant_ids: Iterable[str],
) -> List[SpeakerProfile]:
    """Participants first, then everyone else by meeting count (most frequent first)."""
    participant_ids = set(participant_ids)
    participants = [s for s in speakers if s.id in participant_ids]
    others = sorted(
        (s for s in speakers if s.id not in participant_ids),
        key=lambda s: s.meeting_count,
        reverse=True,
    )
    return participants + others


def calculate_speaking_time(segments: Iterable[TranscriptSegment]) -> Dict[str, float]:
    """Total milliseconds per confirmed speaker."""
    speaking_time: Dict[str, float] = {}
    for segment in segments:
        if segment.speaker_id:
            duration = segment.end_time_ms - segment.start_time_ms
            speaking_time[segment.speaker_id] = speaking_time.get(segment.speaker_id, 0.0) + duration
    return speaking_time


def segment_speaker_stats(segments: Iterable[TranscriptSegment]) -> List[Dict]:
    """Per-speaker segment count, duration and share; unassigned segments count as ``unknown``."""
    stats: Dict[str, Dict[str, float]] = {}
    total_duration = 0.0

    for segment in segments:
        speaker_id = segment.speaker_id or 'unknown'
        duration = segment.end_time_ms - segment.start_time_ms
        total_duration += duration
        entry = stats.setdefault(speaker_id, {'count': 0, 'duration': 0.0})
        entry['count'] += 1
        entry['duration'] += duration

    return [
        {
            'speaker_id': speaker_id,
            'segment_count': int(entry['count']),
            'total_duration_ms': entry['duration'],
            'percentage': (entry['duration'] / total_duration * 100) if total_duration > 0 else 0.0,
        }
        for speaker_id, entry in stats.items()
    ]
