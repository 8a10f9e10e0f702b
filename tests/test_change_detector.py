"""
Tests for change_detector.py.
"""

import pytest

from kbcrawler.change_detector import ChangeDetector, word_diff


@pytest.fixture
def detector():
    return ChangeDetector()


URL = "https://docs.example.org/guide"


class TestChangeDetector:

    def test_first_observation(self, detector):
        report = detector.detect_change("acme", URL, "hello world")
        assert report.is_first_observation
        assert report.change_percentage == 0.0
        assert not report.is_major
        assert report.summary == "First observation"

    def test_identical_content(self, detector):
        detector.detect_change("acme", URL, "hello world")
        report = detector.detect_change("acme", URL, "hello   world\n")
        assert report.change_percentage == 0.0
        assert report.summary == "No changes detected"
        assert not report.is_first_observation

    def test_small_edit(self, detector):
        detector.detect_change("acme", URL, "alpha beta gamma delta")
        report = detector.detect_change("acme", URL, "alpha beta gamma epsilon")
        assert report.change_percentage == pytest.approx(25.0)
        assert report.added_words == 1
        assert report.removed_words == 1
        assert report.summary == "+1 words added, -1 words removed"
        assert report.has_significant_changes
        assert not report.is_major

    def test_rewrite_is_major(self, detector):
        detector.detect_change("acme", URL, "one two three four")
        report = detector.detect_change("acme", URL, "five six seven eight")
        assert report.change_percentage == 100.0
        assert report.is_major

    def test_threshold_is_strict(self):
        """Exactly the threshold is not major."""
        detector = ChangeDetector(major_change_threshold=25.0)
        detector.detect_change("acme", URL, "alpha beta gamma delta")
        assert not detector.detect_change("acme", URL, "alpha beta gamma epsilon").is_major

    def test_baseline_always_advances(self, detector):
        """After a major change the next comparison is against the new text."""
        detector.detect_change("acme", URL, "one two three four")
        detector.detect_change("acme", URL, "five six seven eight")
        report = detector.detect_change("acme", URL, "five six seven eight")
        assert report.change_percentage == 0.0
        assert len(detector.store.history("acme", URL)) == 3

    def test_tenants_tracked_separately(self, detector):
        detector.detect_change("acme", URL, "hello world")
        assert detector.detect_change("globex", URL, "something else").is_first_observation

    def test_content_ref_kept_on_snapshot(self, detector):
        detector.detect_change("acme", URL, "hello", content_ref="scraped/acme/x.json")
        snapshot, text = detector.store.latest("acme", URL)
        assert snapshot.content_ref == "scraped/acme/x.json"
        assert text == "hello"

    def test_only_newest_entry_keeps_text(self, detector):
        for body in ("first draft", "second draft", "third draft"):
            detector.detect_change("acme", URL, body)
        texts = [text for _, text in detector.store.entries("acme", URL)]
        assert texts == [None, None, "third draft"]
        assert detector.detect_change("acme", URL, "third draft").change_percentage == 0.0

    def test_record_content_ref_after_save(self, detector):
        detector.detect_change("acme", URL, "hello")
        snapshot, _ = detector.store.latest("acme", URL)
        detector.record_content_ref("acme", URL, snapshot.content_hash, "scraped/acme/y.json")
        assert detector.store.latest("acme", URL)[0].content_ref == "scraped/acme/y.json"

    def test_record_content_ref_ignores_stale_hash(self, detector):
        detector.detect_change("acme", URL, "hello")
        detector.detect_change("acme", URL, "goodbye")
        detector.record_content_ref("acme", URL, "not-the-latest", "scraped/acme/old.json")
        assert detector.store.latest("acme", URL)[0].content_ref == ""


class TestWordDiff:

    def test_insert_only(self):
        ratio, added, removed = word_diff("a b", "a b c d")
        assert (added, removed) == (2, 0)
        assert ratio == pytest.approx(2 * 2 / 6)

    def test_empty_inputs(self):
        ratio, added, removed = word_diff("", "")
        assert ratio == 1.0
        assert (added, removed) == (0, 0)
