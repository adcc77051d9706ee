"""Dialogue canonicalization and near-duplicate matching."""

from voxline.dialogue.matcher import (
    DialogueCandidate,
    DialogueMatcher,
    MatchDecision,
    similarity,
    transcript_similarity,
)
from voxline.dialogue.normalize import canonicalize, comparison_key

__all__ = [
    "DialogueCandidate",
    "DialogueMatcher",
    "MatchDecision",
    "canonicalize",
    "comparison_key",
    "similarity",
    "transcript_similarity",
]
