"""
Regex obfuscation for oblivious secret matching.

An untrusted target is never sent a secret value. Instead it receives a
bundle of bracket-class regular expressions generated from the value:

- "good" patterns contain the true character at every position among
  random decoys, so they always match the value;
- "bad" patterns contain only decoys, so they never match the value.

The bundle is shuffled so the target cannot tell the two sets apart. A
target that holds the value will report every good pattern as matching,
and the caller accepts the hit when the reported count reaches the
bundle threshold. Unrelated content matches each pattern only with a
probability shrinking like ``(chars_per_position / len(alphabet)) ** n``.
"""

import random
import string
from dataclasses import dataclass
from typing import Optional

ALPHANUMERIC = string.ascii_letters + string.digits
ALPHANUMERIC_SYMBOLS = ALPHANUMERIC + string.punctuation

ALPHABETS = {
    "alphanumeric": ALPHANUMERIC,
    "alphanumeric_symbols": ALPHANUMERIC_SYMBOLS,
}

# Characters with a meaning inside a bracket class, or reserved for set operations
_CLASS_SPECIALS = frozenset("\\]^-[&~|")


@dataclass(frozen=True)
class RegexBundle:
    """Shuffled good and bad patterns for one secret value."""

    patterns: tuple[str, ...]
    threshold: int

    def accepts(self, match_count: int) -> bool:
        """Whether a reported match count proves the value is present."""
        return match_count >= self.threshold


def value_to_text(value: bytes) -> str:
    """Decode a secret value to the text a target would search."""
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        return value.decode("latin-1")


def escape_class_char(char: str) -> str:
    """Escape a single character for use inside a bracket class."""
    if char in _CLASS_SPECIALS:
        return "\\" + char
    return char


class RegexObfuscator:
    """
    Generates regex bundles from secret values.

    Attributes:
        alphabet: Characters decoys are drawn from
        good_patterns: Number of patterns that match the value
        bad_patterns: Number of patterns that never match the value
        chars_per_position: Size of every bracket class
        threshold: Matches required to accept a hit
    """

    def __init__(
        self,
        alphabet: str = ALPHANUMERIC,
        good_patterns: int = 10,
        bad_patterns: int = 5,
        chars_per_position: int = 7,
        threshold: int = 9,
        rng: Optional[random.Random] = None,
    ):
        if len(set(alphabet)) < 2:
            raise ValueError("alphabet must contain at least two distinct characters")
        if chars_per_position < 1:
            raise ValueError("chars_per_position must be at least 1")
        if good_patterns < 0 or bad_patterns < 0:
            raise ValueError("pattern counts must not be negative")
        self._alphabet = alphabet
        self._good_patterns = good_patterns
        self._bad_patterns = bad_patterns
        self._chars_per_position = chars_per_position
        self._threshold = threshold
        self._rng = rng or random.SystemRandom()

    @classmethod
    def from_config(cls, config, rng: Optional[random.Random] = None) -> "RegexObfuscator":
        """Create an obfuscator from an ObfuscationConfig section."""
        alphabet = ALPHABETS.get(config.alphabet)
        if alphabet is None:
            raise ValueError(f"Unknown alphabet: {config.alphabet}")
        return cls(
            alphabet=alphabet,
            good_patterns=config.good_patterns,
            bad_patterns=config.bad_patterns,
            chars_per_position=config.chars_per_position,
            threshold=config.threshold,
            rng=rng,
        )

    @property
    def threshold(self) -> int:
        return self._threshold

    def generate(self, value: bytes) -> RegexBundle:
        """
        Build a fresh bundle for a value.

        Args:
            value: Raw secret bytes

        Returns:
            RegexBundle with shuffled patterns and the configured threshold
        """
        text = value_to_text(value)
        patterns = [self._good_pattern(text) for _ in range(self._good_patterns)]
        patterns.extend(self._bad_pattern(text) for _ in range(self._bad_patterns))
        self._rng.shuffle(patterns)
        return RegexBundle(patterns=tuple(patterns), threshold=self._threshold)

    def _good_pattern(self, text: str) -> str:
        classes = []
        for char in text:
            members = [char]
            members.extend(
                self._rng.choice(self._alphabet) for _ in range(self._chars_per_position - 1)
            )
            self._rng.shuffle(members)
            classes.append(self._bracket(members))
        return "".join(classes)

    def _bad_pattern(self, text: str) -> str:
        classes = []
        for char in text:
            members = [self._decoy(char) for _ in range(self._chars_per_position)]
            classes.append(self._bracket(members))
        return "".join(classes)

    def _decoy(self, excluded: str) -> str:
        while True:
            candidate = self._rng.choice(self._alphabet)
            if candidate != excluded:
                return candidate

    @staticmethod
    def _bracket(members: list[str]) -> str:
        return "[" + "".join(escape_class_char(c) for c in members) + "]"
