"""
Scoring a transcript against the phrase that was actually spoken.

``accuracy_percentage`` is the quick score shown next to every backend after a
comparison: special formatting is trimmed from both texts (Watson-style
``%HESITATION`` words, ``[pause]`` style stage directions, punctuation, extra
whitespace), then the character Levenshtein distance is related to the length
of the phrase.
"""
from __future__ import annotations

from typing import AbstractSet, Mapping, Sequence

# Words starting with these are dropped ("%HESITATION").
DEFAULT_LEADING_CHARS_FOR_WORDS_TO_REMOVE: frozenset[str] = frozenset({"%"})
# Text enclosed in these is dropped ("[pause]").
DEFAULT_SURROUNDING_CHARS_FOR_TEXT_TO_REMOVE: Mapping[str, str] = {"[": "]"}

_WORD_SEPARATOR = " "


def levenshtein_distance(first: Sequence, second: Sequence, case_sensitive: bool = False) -> int:
    """
    Edit distance between two sequences (insert, delete, substitute all cost 1).

    Works on strings (character level) as well as lists of words.
    String comparison ignores case unless case_sensitive is set.
    """
    if not case_sensitive:
        if isinstance(first, str):
            first = first.lower()
        if isinstance(second, str):
            second = second.lower()

    n, m = len(first), len(second)
    dp = list(range(m + 1))
    for i in range(1, n + 1):
        prev, dp[0] = dp[0], i
        for j in range(1, m + 1):
            prev, dp[j] = dp[j], min(
                dp[j] + 1,           # deletion
                dp[j - 1] + 1,       # insertion
                prev + (first[i - 1] != second[j - 1]),  # substitution
            )
    return dp[m]


def trim_special_formatting(
        text: str,
        chars_to_remove: AbstractSet[str] = frozenset(),
        leading_chars_for_words_to_remove: AbstractSet[str] = DEFAULT_LEADING_CHARS_FOR_WORDS_TO_REMOVE,
        surrounding_chars_for_text_to_remove: Mapping[str, str] = DEFAULT_SURROUNDING_CHARS_FOR_TEXT_TO_REMOVE,
        remove_non_alphanumeric: bool = True,
        remove_extra_whitespace: bool = True,
) -> str:
    """
    Strip formatting that should not count against a transcript.

    - chars_to_remove: single characters to drop wherever they are.
    - leading_chars_for_words_to_remove: a word starting with one of these is
      dropped up to the next space.
    - surrounding_chars_for_text_to_remove: opening -> closing character; the
      enclosed text (brackets included) is dropped.
    - remove_non_alphanumeric: keep only letters, digits and whitespace.
    - remove_extra_whitespace: strip both ends and collapse whitespace runs to
      their first character.
    """
    if remove_extra_whitespace:
        text = text.strip()

    out: list[str] = []
    last_added = _WORD_SEPARATOR
    ignoring_whitespace = False
    in_word_to_remove = False
    text_to_remove_end: str | None = None

    for ch in text:
        if text_to_remove_end is not None:
            if ch == text_to_remove_end:
                text_to_remove_end = None
            continue

        if in_word_to_remove and ch == _WORD_SEPARATOR:
            in_word_to_remove = False
        if in_word_to_remove or (ignoring_whitespace and ch.isspace()):
            continue

        if ch in surrounding_chars_for_text_to_remove:
            text_to_remove_end = surrounding_chars_for_text_to_remove[ch]
        elif ch in leading_chars_for_words_to_remove and last_added == _WORD_SEPARATOR:
            in_word_to_remove = True
        elif ch not in chars_to_remove and (not remove_non_alphanumeric or ch.isalnum() or ch.isspace()):
            out.append(ch)
            last_added = ch
            if ch.isspace():
                ignoring_whitespace = remove_extra_whitespace
            else:
                ignoring_whitespace = False

    return "".join(out)


def accuracy_percentage(transcript: str, phrase: str) -> float:
    """
    Accuracy of transcript against the spoken phrase in percent, 0 to 100.

    Both texts are trimmed of special formatting first. Comparison is case
    insensitive. An empty phrase only matches an empty transcript.
    """
    got = trim_special_formatting(transcript)
    expected = trim_special_formatting(phrase)
    if not expected:
        return 100.0 if not got else 0.0
    distance = levenshtein_distance(got, expected)
    return max(0.0, 100.0 - 100.0 * distance / len(expected))
