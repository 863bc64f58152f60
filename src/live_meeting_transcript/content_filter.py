"""
Quality gates around the transcription call.

The pre-filter keeps near-silent chunks away from the network. The
post-filter discards results that look like recognizer hallucinations;
its rules are pluggable so new artifact patterns need no pipeline change.
"""

import io
import logging
import math
import re
from typing import Iterable, List, Optional, Pattern, Sequence, Union

import numpy as np
import soundfile as sf

from .types import AudioChunk

logger = logging.getLogger(__name__)

SILENCE_RMS_THRESHOLD = 0.01
MAX_SILENCE_RATIO = 0.7
SILENCE_WINDOW_MS = 50
MIN_CONFIDENCE = 0.4
MIN_TEXT_LENGTH = 5
DEFAULT_CONFIDENCE = 0.9

# Known recognizer artifacts on low-information audio
DEFAULT_HALLUCINATION_PATTERNS = [
    r"diät|abnehm|shake|schlank|weight loss|lose weight",
    r"vielen dank für.*zusehen|thanks? (you )?for watching",
    r"abonnieren|liken|glocke|subscribe|like and share",
    r"musik|music|♪|🎵|🎶",
    r"\[.*\]|\(.*(applause|laughter|music|silence).*\)",
    r"untertitel.*erstellt|subtitles? (by|created)|captions? by",
    r"©|copyright",
    r"deutsch lernen.*präsentiert",
    r"lernen.*präsentiert|präsentiert.*lernen",
    r"willkommen.*kanal|welcome (back )?to (my|our) channel",
    r"^\W*(no speech|silence|no audio)\W*$",
]


def silence_ratio(
    payload: bytes,
    window_ms: float = SILENCE_WINDOW_MS,
    rms_threshold: float = SILENCE_RMS_THRESHOLD,
) -> float:
    """Share of ``window_ms`` windows whose RMS is below ``rms_threshold``.

    Returns 0.0 when the payload cannot be decoded, so undecodable audio is
    still sent for transcription.
    """
    try:
        data, sample_rate = sf.read(io.BytesIO(payload), dtype="float32", always_2d=True)
    except Exception as e:
        logger.debug(f"Silence analysis failed, keeping chunk: {e}")
        return 0.0

    channel = data[:, 0]
    window = int(sample_rate * window_ms / 1000.0)
    if window <= 0:
        return 0.0
    num_windows = len(channel) // window
    if num_windows == 0:
        return 0.0

    frames = channel[: num_windows * window].reshape(num_windows, window)
    rms = np.sqrt(np.mean(frames.astype(np.float64) ** 2, axis=1))
    return float(np.count_nonzero(rms < rms_threshold)) / num_windows


class ResultRule:
    """A post-filter rule. ``check`` returns a rejection reason or None."""

    name = "rule"

    def check(self, text: str, confidence: float) -> Optional[str]:
        raise NotImplementedError


class MinConfidenceRule(ResultRule):
    name = "low_confidence"

    def __init__(self, minimum: float = MIN_CONFIDENCE):
        self.minimum = minimum

    def check(self, text, confidence):
        if confidence < self.minimum:
            return f"confidence {confidence:.2f} below {self.minimum:.2f}"
        return None


class MinLengthRule(ResultRule):
    name = "too_short"

    def __init__(self, minimum: int = MIN_TEXT_LENGTH):
        self.minimum = minimum

    def check(self, text, confidence):
        if len(text) < self.minimum:
            return f"text shorter than {self.minimum} characters"
        return None


class PatternRule(ResultRule):
    name = "hallucination"

    def __init__(self, patterns: Iterable[Union[str, Pattern]] = DEFAULT_HALLUCINATION_PATTERNS):
        self.patterns: List[Pattern] = [
            p if isinstance(p, re.Pattern) else re.compile(p, re.IGNORECASE) for p in patterns
        ]

    def add_pattern(self, pattern: Union[str, Pattern]) -> None:
        self.patterns.append(pattern if isinstance(pattern, re.Pattern) else re.compile(pattern, re.IGNORECASE))

    def check(self, text, confidence):
        for pattern in self.patterns:
            if pattern.search(text):
                return f"matches artifact pattern {pattern.pattern!r}"
        return None


def default_rules() -> List[ResultRule]:
    return [MinConfidenceRule(), MinLengthRule(), PatternRule()]


class ContentFilter:
    """Silence pre-filter plus rule-based hallucination post-filter."""

    def __init__(
        self,
        rules: Optional[Sequence[ResultRule]] = None,
        max_silence_ratio: float = MAX_SILENCE_RATIO,
        silence_rms_threshold: float = SILENCE_RMS_THRESHOLD,
        window_ms: float = SILENCE_WINDOW_MS,
    ):
        self.rules: List[ResultRule] = list(rules) if rules is not None else default_rules()
        self.max_silence_ratio = max_silence_ratio
        self.silence_rms_threshold = silence_rms_threshold
        self.window_ms = window_ms

    def add_rule(self, rule: ResultRule) -> None:
        self.rules.append(rule)

    def should_transcribe(self, chunk: AudioChunk) -> bool:
        """Pre-filter: False when the chunk is mostly silence."""
        ratio = silence_ratio(chunk.payload, self.window_ms, self.silence_rms_threshold)
        if ratio > self.max_silence_ratio:
            logger.debug(
                f"Skipping chunk {chunk.id} - silence ratio {ratio:.1%} "
                f"above {self.max_silence_ratio:.0%}"
            )
            return False
        return True

    def check_result(self, text: str, confidence: Optional[float] = None) -> Optional[str]:
        """Post-filter: rejection reason for a transcription result, or None to accept."""
        if confidence is None or (isinstance(confidence, float) and math.isnan(confidence)):
            confidence = DEFAULT_CONFIDENCE
        for rule in self.rules:
            reason = rule.check(text, confidence)
            if reason:
                logger.debug(f"Rejected result ({rule.name}): {text[:50]!r} - {reason}")
                return reason
        return None
