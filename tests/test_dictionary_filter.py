from __future__ import annotations

import unittest
from copy import deepcopy
from itertools import combinations

from correction_store.dictionary_filter import filter_dictionary_words, is_spelling_rule


def make_record(first_rule=None):
    corrected = {
        "text": "Froddo geht nach Mordor und Bruchthal.",
        "corrections": [
            {
                "offset": 28,
                "length": 9,
                "message": "Tippfehler?",
                "original": "Bruchtal",
                "replacedWith": "Bruchthal",
                "rule": {"id": "GERMAN_SPELLER_RULE", "category": "TYPOS"},
            },
            {
                "offset": 0,
                "length": 6,
                "message": "Tippfehler?",
                "original": "Frodo",
                "replacedWith": "Froddo",
                "rule": first_rule or {"id": "GERMAN_SPELLER_RULE", "category": "TYPOS"},
            },
        ],
    }
    return {
        "timeSpentMs": 0,
        "messages": [],
        "paragraphInfo": [
            {"original": "Frodo geht nach Mordor und Bruchtal.", "judgment": {}, "corrected": corrected},
            {"original": "Ende.", "judgment": {}},
        ],
    }


class DictionaryFilterTests(unittest.TestCase):
    def test_dictionary_word_is_restored_and_offsets_shift(self) -> None:
        record = make_record()
        snapshot = deepcopy(record)

        filtered = filter_dictionary_words(record, ["Frodo"])

        corrected = filtered["paragraphInfo"][0]["corrected"]
        self.assertEqual(corrected["text"], "Frodo geht nach Mordor und Bruchthal.")
        self.assertEqual(len(corrected["corrections"]), 1)
        remaining = corrected["corrections"][0]
        self.assertEqual(remaining["offset"], 27)
        self.assertEqual(corrected["text"][27:27 + remaining["length"]], "Bruchthal")
        self.assertEqual(record, snapshot)

    def test_match_is_case_insensitive(self) -> None:
        filtered = filter_dictionary_words(make_record(), {"  FRODO "})
        self.assertTrue(filtered["paragraphInfo"][0]["corrected"]["text"].startswith("Frodo "))

    def test_every_listed_word_is_removed(self) -> None:
        filtered = filter_dictionary_words(make_record(), ["frodo", "bruchtal"])
        corrected = filtered["paragraphInfo"][0]["corrected"]
        self.assertEqual(corrected["text"], "Frodo geht nach Mordor und Bruchtal.")
        self.assertEqual(corrected["corrections"], [])

    def test_non_spelling_rules_are_kept(self) -> None:
        record = make_record(first_rule={"id": "AGREEMENT", "category": "GRAMMAR"})
        filtered = filter_dictionary_words(record, ["Frodo"])
        self.assertEqual(filtered["paragraphInfo"][0]["corrected"]["text"], "Froddo geht nach Mordor und Bruchthal.")

    def test_empty_dictionary_returns_equal_copy(self) -> None:
        record = make_record()
        filtered = filter_dictionary_words(record, [])
        self.assertEqual(filtered, record)
        self.assertIsNot(filtered, record)

    def test_spelling_rule_detection(self) -> None:
        self.assertTrue(is_spelling_rule({"rule": {"id": "X", "category": "misspelling"}}))
        self.assertTrue(is_spelling_rule({"rule": {"id": "HUNSPELL_RULE", "category": "MISC"}}))
        self.assertFalse(is_spelling_rule({"rule": {"id": "COMMA", "category": "PUNCTUATION"}}))
        self.assertFalse(is_spelling_rule({}))


SEGMENTS = [
    ("Froddo", "Frodo"),
    ("Samm", "Sam"),
    (" geht mit ", None),
    ("Gandalff", "Gandalf"),
    (" nach ", None),
    ("Mordorr", "Mordor"),
    (".", None),
]


def spliced_record():
    """Corrected text built from SEGMENTS; the first two fixes touch each other."""
    text = ""
    corrections = []
    for shown, original in SEGMENTS:
        if original is not None:
            corrections.append(
                {
                    "offset": len(text),
                    "length": len(shown),
                    "message": "Tippfehler?",
                    "original": original,
                    "replacedWith": shown,
                    "rule": {"id": "GERMAN_SPELLER_RULE", "category": "TYPOS"},
                }
            )
        text += shown
    return {
        "timeSpentMs": 0,
        "messages": [],
        "paragraphInfo": [
            {
                "original": "".join(original or shown for shown, original in SEGMENTS),
                "judgment": {},
                "corrected": {"text": text, "corrections": corrections},
            }
        ],
    }


class DictionarySpliceInvariantTests(unittest.TestCase):
    def test_offsets_stay_consistent_for_every_word_subset(self) -> None:
        words = [original for _, original in SEGMENTS if original is not None]
        record = spliced_record()
        before = record["paragraphInfo"][0]["corrected"]["text"]

        for size in range(len(words) + 1):
            for chosen in combinations(words, size):
                with self.subTest(words=chosen):
                    corrected = filter_dictionary_words(record, chosen)["paragraphInfo"][0]["corrected"]
                    text = corrected["text"]

                    expected = "".join(
                        original if original in chosen else shown for shown, original in SEGMENTS
                    )
                    self.assertEqual(text, expected)

                    stored = record["paragraphInfo"][0]["corrected"]["corrections"]
                    removed = [c for c in stored if c["original"] in chosen]
                    delta = sum(len(c["original"]) - len(c["replacedWith"]) for c in removed)
                    self.assertEqual(len(text) - len(before), delta)

                    remaining = corrected["corrections"]
                    self.assertEqual(len(remaining), len(words) - size)
                    end = 0
                    for entry in remaining:
                        self.assertGreaterEqual(entry["offset"], end)
                        end = entry["offset"] + len(entry["replacedWith"])
                        self.assertEqual(text[entry["offset"]:end], entry["replacedWith"])


if __name__ == "__main__":
    unittest.main()
