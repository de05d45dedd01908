import logging
from typing import Optional

from frontdesk.company_config import ContentCard
from frontdesk.validation import matched_keywords

logger = logging.getLogger(__name__)

PHRASE_WEIGHT = 2
KEYWORD_WEIGHT = 1


class ContentCardIndex:
    """Keyword/phrase lookup over tenant short-answer cards.

    Advisory only: triage uses a hit to nudge confidence, never to decide.
    """

    def __init__(self, cards=()):
        self.cards = tuple(cards)

    @classmethod
    def from_config(cls, config) -> "ContentCardIndex":
        return cls(config.content_cards)

    def score(self, text: str, card: ContentCard) -> int:
        lower = text.lower()
        phrase_hits = sum(1 for p in card.phrases if p and p in lower)
        keyword_hits = len(matched_keywords(text, card.keywords))
        return phrase_hits * PHRASE_WEIGHT + keyword_hits * KEYWORD_WEIGHT

    def lookup(self, text: str) -> Optional[ContentCard]:
        """Best-scoring card, first one wins ties. None when nothing matches."""
        if not text or not self.cards:
            return None
        best = None
        best_score = 0
        for card in self.cards:
            s = self.score(text, card)
            if s > best_score:
                best, best_score = card, s
        return best

    def __len__(self) -> int:
        return len(self.cards)
