"""Near-duplicate dialogue matching.

The matcher never touches storage: it receives the existing dialogue of one
character and returns a :class:`MatchDecision`. Insertion of new dialogue is
left to the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from rapidfuzz import fuzz

from voxline.dialogue.normalize import canonicalize, comparison_key, strip_quotes
from voxline.errors import InvalidText

__all__ = [
    "DialogueCandidate",
    "MatchDecision",
    "DialogueMatcher",
    "similarity",
    "transcript_similarity",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DialogueCandidate:
    """Existing dialogue row considered for reuse."""

    id: int
    text: str


@dataclass(frozen=True, slots=True)
class MatchDecision:
    """Outcome of matching one incoming line.

    Attributes:
        dialogue_id: Id of the reused dialogue, ``None`` when a new dialogue
            must be created.
        text: Text to store for a new dialogue, or the stored text of the
            reused one.
        key: Comparison key of ``text``; stable identity for job coalescing.
        score: Similarity of the best candidate in ``[0, 1]`` (1.0 for an
            exact key match, 0.0 when there were no candidates).
    """

    dialogue_id: int | None
    text: str
    key: str
    score: float

    @property
    def is_new(self) -> bool:
        return self.dialogue_id is None


def similarity(a: str, b: str) -> float:
    """Normalized Indel similarity of two comparison keys in ``[0, 1]``."""

    return fuzz.ratio(a, b) / 100.0


def transcript_similarity(expected: str, transcript: str) -> float:
    """Score a transcription against the text it should contain.

    Both sides are reduced to comparison keys with all quote characters
    removed, since transcribers rarely reproduce them.
    """

    return similarity(
        comparison_key(strip_quotes(expected)),
        comparison_key(strip_quotes(transcript)),
    )


class DialogueMatcher:
    """Select the existing dialogue an incoming line should reuse.

    Policy:

    1. Identical comparison key: reuse, lowest id first.
    2. Best similarity at or above ``threshold``: reuse that dialogue; ties
       on the top score go to the lowest id.
    3. Otherwise a new dialogue is required.
    """

    def __init__(self, threshold: float = 0.9) -> None:
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"threshold must be within [0, 1], got {threshold}")
        self.threshold = threshold

    @staticmethod
    def canonical(text: str) -> str:
        """Return the canonical form of ``text``.

        Raises:
            InvalidText: If nothing is left after canonicalization.
        """

        canonical = canonicalize(text)
        if not canonical:
            raise InvalidText("Dialogue text is empty")
        return canonical

    def match(self, text: str, candidates: Iterable[DialogueCandidate]) -> MatchDecision:
        """Decide which dialogue ``text`` belongs to.

        Args:
            text: Raw incoming line.
            candidates: Existing dialogue of the same character, any order.

        Returns:
            The match decision.

        Raises:
            InvalidText: If ``text`` is empty after canonicalization.
        """

        canonical = self.canonical(text)
        key = comparison_key(canonical)

        best: tuple[float, int, str] | None = None
        for cand in sorted(candidates, key=lambda c: c.id):
            cand_key = comparison_key(cand.text)
            if cand_key == key:
                logger.debug("Exact match for %r -> dialogue %d", canonical, cand.id)
                return MatchDecision(cand.id, cand.text, cand_key, 1.0)
            score = similarity(key, cand_key)
            # strict '>' keeps the oldest entry on ties
            if best is None or score > best[0]:
                best = (score, cand.id, cand.text)

        if best is not None and best[0] >= self.threshold:
            score, cand_id, cand_text = best
            logger.debug(
                "Merged %r into dialogue %d (score %.3f >= %.3f)",
                canonical,
                cand_id,
                score,
                self.threshold,
            )
            return MatchDecision(cand_id, cand_text, comparison_key(cand_text), score)

        return MatchDecision(None, canonical, key, best[0] if best else 0.0)
