"""Word-based token estimation.

The chunker budgets fragments in tokens, but running a real tokenizer over every
section is unnecessary for sizing decisions. Token counts here are an
APPROXIMATION: the whitespace word count multiplied by a per-language
tokens-per-word ratio, rounded up. They will not match the embedding provider's
own count exactly.
"""
import math
from typing import Dict, Optional

DEFAULT_LANGUAGE = "pt"

# Approximate tokens per whitespace-separated word for cl100k-style tokenizers.
LANGUAGE_TOKEN_RATIOS: Dict[str, float] = {
    "pt": 1.3,
    "es": 1.3,
    "en": 1.25,
}


def estimate_tokens(text: str, tokens_per_word: float = LANGUAGE_TOKEN_RATIOS[DEFAULT_LANGUAGE]) -> int:
    """Estimate the token count of a text span (approximation, see module docs).

    Args:
        text: Text to measure.
        tokens_per_word: Multiplier applied to the word count.

    Returns:
        int: ceil(word_count * tokens_per_word), or 0 for empty text.
    """
    if not text:
        return 0
    return math.ceil(len(text.split()) * tokens_per_word)


class TokenEstimator:
    """Approximate token counter with a tunable tokens-per-word ratio."""

    def __init__(self, tokens_per_word: float = LANGUAGE_TOKEN_RATIOS[DEFAULT_LANGUAGE]):
        if tokens_per_word <= 0:
            raise ValueError("tokens_per_word must be positive")
        self.tokens_per_word = tokens_per_word

    @classmethod
    def for_language(cls, language: str, override: Optional[float] = None) -> "TokenEstimator":
        """Build an estimator for a language code.

        Args:
            language: ISO-639-1 code such as "pt" or "en". Unknown codes use the
                default language ratio.
            override: Explicit ratio that takes precedence when positive.
        """
        if override:
            return cls(override)
        ratio = LANGUAGE_TOKEN_RATIOS.get(
            (language or "").lower(), LANGUAGE_TOKEN_RATIOS[DEFAULT_LANGUAGE]
        )
        return cls(ratio)

    def estimate(self, text: str) -> int:
        return estimate_tokens(text, self.tokens_per_word)

    def max_words(self, token_budget: int) -> int:
        """Largest word count whose estimate stays within token_budget."""
        if token_budget <= 0:
            return 0
        words = int(token_budget / self.tokens_per_word)
        # Guard against float rounding at the boundary
        while words > 0 and math.ceil(words * self.tokens_per_word) > token_budget:
            words -= 1
        return words
