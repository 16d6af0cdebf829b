"""
Complaint detection tests.
Run with: python -m pytest tests/ -v
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from agents.detector import ComplaintDetector, DetectionAgent
from conftest import make_item


@pytest.fixture
def detector():
    return ComplaintDetector()


class TestComplaintDetector:
    def test_neutral_text_is_not_a_complaint(self, detector):
        result = detector.detect("Show HN: a tiny static site generator written in Go")
        assert result.is_complaint is False
        assert result.confidence == 0
        assert result.matched_patterns.total == 0

    def test_single_frustration_match(self, detector):
        result = detector.detect("I hate how this dashboard looks")
        assert result.is_complaint
        assert result.matched_patterns.frustration == ["hate"]
        assert result.confidence == 15 + 20

    def test_matching_is_case_insensitive(self, detector):
        result = detector.detect("This is TERRIBLE")
        assert result.matched_patterns.frustration == ["TERRIBLE"]

    def test_word_boundaries_respected(self, detector):
        # "debugging" must not match the bug pattern
        result = detector.detect("Debugging the scheduler today")
        assert result.matched_patterns.failure == []

    def test_all_three_categories(self, detector):
        result = detector.detect(
            "So frustrating. The sync doesn't work and there is no way to see why."
        )
        assert result.matched_patterns.categories_hit == 3
        assert "doesn't work" in result.matched_patterns.failure
        assert "no way to" in result.matched_patterns.problem
        assert result.confidence == 100

    def test_confidence_is_capped(self, detector):
        text = ("I hate this, it is terrible and awful, a nightmare. It is broken, "
                "buggy, throws errors, keeps crashing. Impossible to use, hard to fix.")
        result = detector.detect(text)
        assert result.confidence == 100

    def test_confidence_grows_with_matches(self, detector):
        one = detector.detect("This is annoying")
        two = detector.detect("This is annoying and the upload failed")
        assert 0 <= one.confidence < two.confidence <= 100

    def test_empty_text(self, detector):
        result = detector.detect("")
        assert not result.is_complaint
        assert result.confidence == 0


class TestDetectionAgent:
    def test_flags_unprocessed_items(self, store):
        store.insert_complaints([
            make_item("1", "The importer keeps crashing on large files"),
            make_item("2", "Launching my new side project today"),
        ])
        stats = DetectionAgent(store).run()

        assert stats.total_processed == 2
        assert stats.complaints_detected == 1
        assert stats.non_complaints == 1
        assert stats.pattern_breakdown["failure"] == 1
        assert store.get_complaint_by_source("hackernews", "1").is_complaint is True
        assert store.get_complaint_by_source("hackernews", "2").is_complaint is False

    def test_detection_runs_once_per_item(self, store):
        store.insert_complaints([make_item("1", "The importer is broken")])
        agent = DetectionAgent(store)
        assert agent.run().total_processed == 1
        assert agent.run().total_processed == 0

    def test_failed_embedding_items_stay_rejected(self, store):
        store.insert_complaints([make_item("1", "The importer is broken")])
        DetectionAgent(store).run()
        row = store.get_complaint_by_source("hackernews", "1")
        store.mark_not_complaint([row.complaint_id])

        DetectionAgent(store).run()
        assert store.get_complaint(row.complaint_id).is_complaint is False
