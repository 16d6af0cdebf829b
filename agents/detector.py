"""
Complaint Detection Agent
--------------------------
Flags raw forum items as complaints using lexical pattern matching over
three independent categories:

  frustration  — "frustrating", "sick of", "nightmare", ...
  failure      — "doesn't work", "keeps crashing", "unable to", ...
  problem      — "no way to", "wish there was", "hard to", ...

An item is a complaint iff any pattern in any category matches.

  confidence = min(100, total_matches * 15 + categories_hit * 20)

Detection is a one-time gate: each item is evaluated exactly once.

Input:  RuntimeSettings
Output: DetectionStats
"""

import re
import logging
from typing import Dict, List, Optional, Pattern

from agents.base import Agent
from config.settings import settings
from models.schemas import DetectionResult, DetectionStats, MatchedPatterns

logger = logging.getLogger(__name__)

CATEGORIES = ("frustration", "failure", "problem")


def _compile(patterns: List[str]) -> List[Pattern]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


DEFAULT_DETECTION_PATTERNS: Dict[str, List[Pattern]] = {
    "frustration": _compile([
        r"\b(frustrated|frustrating|frustration)\b",
        r"\b(annoying|annoyed|annoyance)\b",
        r"\b(painful|pain point)\b",
        r"\b(hate|hating|hated)\b",
        r"\b(terrible|terribly)\b",
        r"\b(awful|awfully)\b",
        r"\b(nightmare)\b",
        r"\b(drives? me crazy|driving me crazy)\b",
        r"\b(fed up|sick of|tired of)\b",
        r"\b(unbearable|intolerable)\b",
        r"\b(infuriating|maddening)\b",
    ]),
    "failure": _compile([
        r"\b(doesn'?t work|does not work|don'?t work|do not work)\b",
        r"\b(broken|is broken|was broken)\b",
        r"\b(failed|failing|fails)\b",
        r"\b(can'?t|cannot|couldn'?t|could not)\b",
        r"\b(unable to)\b",
        r"\b(won'?t|will not)\b",
        r"\b(stopped working)\b",
        r"\b(keeps crashing|keeps failing)\b",
        r"\b(bug|buggy|bugs)\b",
        r"\b(error|errors|erroring)\b",
        r"\b(never works|rarely works)\b",
        r"\b(completely broken)\b",
    ]),
    "problem": _compile([
        r"\b(no way to)\b",
        r"\b(impossible to)\b",
        r"\b(hard to|difficult to)\b",
        r"\b(struggle to|struggling to|struggled to)\b",
        r"\b(can'?t figure out|cannot figure out)\b",
        r"\b(need a better|needs a better)\b",
        r"\b(wish there was|wish I could|wish we could)\b",
        r"\b(looking for a solution|looking for an alternative)\b",
        r"\b(anyone know how to|does anyone know)\b",
        r"\b(there must be a way|there has to be a way)\b",
        r"\b(why is it so hard|why is this so)\b",
        r"\b(missing feature|lacking feature)\b",
        r"\b(no option to|no way of)\b",
        r"\b(should be able to|should be easier)\b",
    ]),
}


class ComplaintDetector:
    """Pure, offline classifier. Safe to share across threads."""

    def __init__(self, patterns: Optional[Dict[str, List[Pattern]]] = None):
        self.patterns = dict(DEFAULT_DETECTION_PATTERNS)
        if patterns:
            self.patterns.update(patterns)

    def detect(self, text: str) -> DetectionResult:
        matched = MatchedPatterns()
        text = text or ""
        for category in CATEGORIES:
            hits = getattr(matched, category)
            for pattern in self.patterns.get(category, []):
                m = pattern.search(text)
                if m:
                    hits.append(m.group(0))

        total = matched.total
        confidence = min(100, total * 15 + matched.categories_hit * 20)
        return DetectionResult(
            is_complaint=total > 0,
            matched_patterns=matched,
            confidence=max(0, confidence),
        )


class DetectionAgent(Agent):
    """
    Stage 2: Complaint Detection

    Input:  RuntimeSettings
    Output: DetectionStats
    """

    def __init__(self, store, detector: Optional[ComplaintDetector] = None,
                 limit: Optional[int] = settings.DETECTION_LIMIT):
        super().__init__(name="DetectionAgent")
        self.store = store
        self.detector = detector or ComplaintDetector()
        self.limit = limit

    def run(self, runtime=None) -> DetectionStats:
        stats = DetectionStats()
        pending = self.store.get_undetected_complaints(self.limit)
        self.logger.info(f"Evaluating {len(pending)} unprocessed item(s)")

        for complaint in pending:
            self.check_cancelled()
            result = self.detector.detect(complaint.text)
            self.store.mark_detection(complaint.complaint_id, result.is_complaint)

            stats.total_processed += 1
            if result.is_complaint:
                stats.complaints_detected += 1
            else:
                stats.non_complaints += 1
            for category in CATEGORIES:
                if getattr(result.matched_patterns, category):
                    stats.pattern_breakdown[category] += 1

        self.logger.info(
            f"Detected {stats.complaints_detected} complaint(s), "
            f"{stats.non_complaints} non-complaint(s)"
        )
        return stats
