"""Heuristic token estimation for conversation text."""

import math
import re
from abc import ABC, abstractmethod

CHARS_PER_TOKEN = 4

CODE_PATTERN = re.compile(r"```|`[^`\n]+`")
URL_PATTERN = re.compile(r"https?://")
EMOJI_PATTERN = re.compile(
    "["
    "\U0001F000-\U0001FAFF"  # pictographs, emoticons, transport, symbols
    "\u2600-\u27BF"  # misc symbols and dingbats
    "\U0001FC00-\U0001FFFF"
    "]"
)


class BaseTokenEstimator(ABC):
    """Maps text to an approximate token count."""

    @abstractmethod
    def estimate(self, text: str) -> int:
        """
        Estimate the number of tokens in text.

        Args:
            text: Message text

        Returns:
            Non-negative token estimate
        """
        pass


class HeuristicTokenEstimator(BaseTokenEstimator):
    """
    Character-length estimator with content adjustments.

    Roughly four characters per token for English prose. Code spans, emoji
    and URLs tokenize less efficiently, so each one present raises the
    multiplier.
    """

    CODE_ADJUSTMENT = 0.2
    EMOJI_ADJUSTMENT = 0.1
    URL_ADJUSTMENT = 0.1

    def estimate(self, text: str) -> int:
        if not text:
            return 0

        base = math.ceil(len(text) / CHARS_PER_TOKEN)

        multiplier = 1.0
        if CODE_PATTERN.search(text):
            multiplier += self.CODE_ADJUSTMENT
        if EMOJI_PATTERN.search(text):
            multiplier += self.EMOJI_ADJUSTMENT
        if URL_PATTERN.search(text):
            multiplier += self.URL_ADJUSTMENT

        # 10 * 1.1 == 11.000000000000002
        return math.ceil(round(base * multiplier, 6))


_default_estimator = HeuristicTokenEstimator()


def estimate_tokens(text: str) -> int:
    """Estimate tokens with the shared heuristic estimator."""
    return _default_estimator.estimate(text)
