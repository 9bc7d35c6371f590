"""
Seed pair selection
"""
import logging
from collections import OrderedDict
from typing import Dict, List, Sequence, Tuple

from .errors import InsufficientFeatureMatches
from .types import Correspondence


logger = logging.getLogger(__name__)


PairKey = Tuple[int, int]


class PairSelector:
    """
    Pick the image pair with the most correspondences

    Ties go to the pair encountered first in the correspondence set.
    """

    def __init__(self, min_matches: int = 50):
        self.min_matches = min_matches

    @staticmethod
    def group(correspondences: Sequence[Correspondence]) -> Dict[PairKey, List[Correspondence]]:
        """Group correspondences by unordered image pair, in encounter order"""
        groups: Dict[PairKey, List[Correspondence]] = OrderedDict()

        for c in correspondences:
            groups.setdefault(c.pair_key, []).append(c)

        return groups

    def select(self, correspondences: Sequence[Correspondence]
               ) -> Tuple[PairKey, List[Correspondence]]:
        """
        Select the seed pair

        Returns:
            (pair key, matches oriented so that image1_index == key[0])

        Raises:
            InsufficientFeatureMatches: best pair has fewer than min_matches
        """
        groups = self.group(correspondences)

        best_key = None
        best_matches: List[Correspondence] = []

        for key, matches in groups.items():
            # Strictly greater keeps the first pair on ties
            if len(matches) > len(best_matches):
                best_key, best_matches = key, matches

        logger.debug("Pair match counts: %s",
                     {k: len(v) for k, v in groups.items()})

        if best_key is None or len(best_matches) < self.min_matches:
            raise InsufficientFeatureMatches(len(best_matches), self.min_matches)

        logger.info("Selected seed pair %d-%d with %d matches",
                    best_key[0], best_key[1], len(best_matches))

        return best_key, [self._orient(c, best_key) for c in best_matches]

    @staticmethod
    def _orient(c: Correspondence, key: PairKey) -> Correspondence:
        if c.image1_index == key[0]:
            return c

        return Correspondence(
            image1_index=c.image2_index,
            image2_index=c.image1_index,
            idx1=c.idx2,
            idx2=c.idx1,
            distance=c.distance,
            second_distance=c.second_distance,
            confidence=c.confidence
        )
