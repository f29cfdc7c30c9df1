"""
Tests for the live accuracy score.

    pytest tests/test_text_accuracy.py -v
"""
from __future__ import annotations

import unittest

from sttcompare.text_accuracy import accuracy_percentage, levenshtein_distance, trim_special_formatting


class TestLevenshtein(unittest.TestCase):

    def test_identity_and_empty(self) -> None:
        for s in ("", "a", "kitten", "Dobrý den"):
            with self.subTest(s=s):
                self.assertEqual(levenshtein_distance(s, s), 0)
                self.assertEqual(levenshtein_distance(s, ""), len(s))
                self.assertEqual(levenshtein_distance("", s), len(s))

    def test_classic(self) -> None:
        self.assertEqual(levenshtein_distance("kitten", "sitting"), 3)
        self.assertEqual(levenshtein_distance("flaw", "lawn"), 2)

    def test_case(self) -> None:
        self.assertEqual(levenshtein_distance("Hello", "hELLO"), 0)
        self.assertEqual(levenshtein_distance("Hello", "hELLO", case_sensitive=True), 5)

    def test_words(self) -> None:
        self.assertEqual(levenshtein_distance(["a", "quick", "fox"], ["a", "slow", "fox", "jumps"]), 2)


class TestTrimSpecialFormatting(unittest.TestCase):

    def test_punctuation_and_whitespace(self) -> None:
        self.assertEqual(trim_special_formatting("  Hello,   world!  "), "Hello world")

    def test_hesitation_words(self) -> None:
        self.assertEqual(trim_special_formatting("so %HESITATION okay"), "so okay")

    def test_bracketed_text(self) -> None:
        self.assertEqual(trim_special_formatting("um [laughs] yes"), "um yes")

    def test_percent_inside_word_kept(self) -> None:
        self.assertEqual(trim_special_formatting("a%b", remove_non_alphanumeric=False), "a%b")

    def test_chars_to_remove(self) -> None:
        self.assertEqual(trim_special_formatting("abcabc", chars_to_remove={"b"}), "acac")

    def test_keep_everything(self) -> None:
        text = "Hi,  there!"
        self.assertEqual(
            trim_special_formatting(text, leading_chars_for_words_to_remove=set(),
                                    surrounding_chars_for_text_to_remove={}, remove_non_alphanumeric=False,
                                    remove_extra_whitespace=False),
            text,
        )


class TestAccuracy(unittest.TestCase):

    def test_exact_match_ignores_case_and_punctuation(self) -> None:
        self.assertEqual(accuracy_percentage("Hello world", "hello, world!"), 100.0)

    def test_one_typo(self) -> None:
        self.assertAlmostEqual(accuracy_percentage("hello wxrld", "hello world"), 100.0 - 100.0 / 11)

    def test_never_negative(self) -> None:
        self.assertEqual(accuracy_percentage("something completely different", "hi"), 0.0)

    def test_empty_phrase(self) -> None:
        self.assertEqual(accuracy_percentage("", ""), 100.0)
        self.assertEqual(accuracy_percentage("noise", ""), 0.0)
        self.assertEqual(accuracy_percentage("", "hello"), 0.0)
