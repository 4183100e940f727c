"""
Correct OCR'd names against a closed vocabulary.

OCR on the versus screen mostly garbles trailing characters and
punctuation, so names are compared with Jaro-Winkler similarity, which
rewards a matching prefix. Known hard cases are listed explicitly below
instead of being left to the metric.
"""

import logging
import re
import unicodedata
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Iterable, Mapping, Optional, Sequence, Tuple

from rapidfuzz.distance import JaroWinkler


logger = logging.getLogger(__name__)


# OCR forms (already normalized) that the metric gets wrong or cannot reach:
# names with punctuation, names wrapped onto two lines, glyph confusions.
DISAMBIGUATION_EXCEPTIONS = {
    'MRGAMEWATCH': 'MR. GAME & WATCH',
    'MRGAMEANDWATCH': 'MR. GAME & WATCH',
    'GAMEWATCH': 'MR. GAME & WATCH',
    'MRGAMESWATCH': 'MR. GAME & WATCH',
    'ROSALINA': 'ROSALINA & LUMA',
    'ROSALINAANDLUMA': 'ROSALINA & LUMA',
    'BANJO': 'BANJO & KAZOOIE',
    'BANJOANDKAZOOIE': 'BANJO & KAZOOIE',
    'POKEMON': 'POKéMON TRAINER',
    'KROOL': 'KING K. ROOL',
    'KINGKR00L': 'KING K. ROOL',
    'DEDEDE': 'KING DEDEDE',
    'ZEROSUIT': 'ZERO SUIT SAMUS',
    'WIIFIT': 'WII FIT TRAINER',
    'ICECLIMBER': 'ICE CLIMBERS',
    'R0B': 'R.O.B.',
    'PACMAM': 'PAC-MAN',
    'BOWSERJ': 'BOWSER JR.',
}

# Name families that differ by a prefix word or a single glyph. The metric
# alone cannot be trusted between members, so close calls are flagged.
NEAR_IDENTICAL_GROUPS = (
    ('PIT', 'DARK PIT'),
    ('SAMUS', 'DARK SAMUS', 'ZERO SUIT SAMUS'),
    ('LINK', 'YOUNG LINK', 'TOON LINK'),
    ('MARIO', 'DR. MARIO'),
    ('DONKEY KONG', 'DIDDY KONG'),
    ('LUCAS', 'LUCARIO', 'LUCINA'),
    ('ROB', 'R.O.B.', 'ROBIN', 'ROY'),
    ('KING DEDEDE', 'KING K. ROOL'),
    ('MII BRAWLER', 'MII SWORDFIGHTER', 'MII GUNNER'),
    ('PYRA', 'MYTHRA'),
)

DEFAULT_AMBIGUITY_MARGIN = 0.03


def normalize_for_matching(text: str) -> str:
    """Normalize text for fuzzy matching - uppercase, fold accents, drop punctuation and spaces."""
    text = unicodedata.normalize('NFKD', text)
    text = ''.join(c for c in text if not unicodedata.combining(c))
    return re.sub(r'[^A-Z0-9]', '', text.upper())


@dataclass(frozen=True)
class Resolution:
    """Best vocabulary entry for a raw string. Unpacks as (match, distance)."""
    match: Optional[str]
    similarity: float
    ambiguous: bool = False

    @property
    def distance(self) -> float:
        return 1.0 - self.similarity

    def __iter__(self):
        return iter((self.match, self.distance))


NO_RESOLUTION = Resolution(None, 0.0)


@lru_cache(maxsize=16)
def _vocabulary_index(vocabulary: Tuple[str, ...]) -> Dict[str, str]:
    """Map normalized keys to vocabulary entries; the first entry wins a collision."""
    index = {}
    for entry in vocabulary:
        key = normalize_for_matching(entry)
        if key and key not in index:
            index[key] = entry
    return index


class FuzzyResolver:
    """
    Resolve raw OCR text to the closest vocabulary entry.

    The resolver never rejects a match itself; callers compare the returned
    similarity to their own acceptance floor.
    """

    def __init__(self, exceptions: Optional[Mapping[str, str]] = None,
                 near_groups: Optional[Iterable[Sequence[str]]] = None,
                 ambiguity_margin: float = DEFAULT_AMBIGUITY_MARGIN):
        self.exceptions = dict(DISAMBIGUATION_EXCEPTIONS)
        if exceptions:
            self.exceptions.update(
                {normalize_for_matching(k): v for k, v in exceptions.items()})
        self.ambiguity_margin = ambiguity_margin

        self._group_of = {}
        for group_id, group in enumerate(near_groups or NEAR_IDENTICAL_GROUPS):
            for name in group:
                self._group_of[normalize_for_matching(name)] = group_id

    def resolve(self, raw_text: str, vocabulary: Sequence[str]) -> Resolution:
        """
        Find the vocabulary entry closest to raw_text.

        Args:
            raw_text: Text as read by OCR
            vocabulary: Closed set of valid entries

        Returns:
            Resolution: best match, similarity in [0, 1] and whether the
            call was too close to separate two near-identical names
        """
        if not raw_text or not vocabulary:
            return NO_RESOLUTION

        query = normalize_for_matching(raw_text)
        if not query:
            return NO_RESOLUTION

        index = _vocabulary_index(tuple(vocabulary))

        if query in index:
            return Resolution(index[query], 1.0)

        override = self.exceptions.get(query)
        if override is not None and normalize_for_matching(override) in index:
            logger.debug(f"Disambiguation exception: {raw_text!r} -> {override!r}")
            return Resolution(index[normalize_for_matching(override)], 1.0)

        best_key, best_score = None, -1.0
        second_key, second_score = None, -1.0
        for key in index:
            score = JaroWinkler.normalized_similarity(query, key)
            if score > best_score:
                second_key, second_score = best_key, best_score
                best_key, best_score = key, score
            elif score > second_score:
                second_key, second_score = key, score

        ambiguous = (
            second_key is not None
            and best_key in self._group_of
            and self._group_of.get(second_key) == self._group_of[best_key]
            and best_score - second_score < self.ambiguity_margin
        )
        if ambiguous:
            logger.debug(f"Ambiguous name {raw_text!r}: {index[best_key]!r} ({best_score:.3f}) "
                         f"vs {index[second_key]!r} ({second_score:.3f})")

        return Resolution(index[best_key], best_score, ambiguous)
