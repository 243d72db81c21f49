"""Classify an existing README to pick a regeneration strategy.

Seven surface signals are counted. This is a heuristic over raw text: a
README that merely mentions "api" in passing scores the API point, and a
thorough README written without headings can score low. Such false
positives and negatives are accepted; the thresholds are not tuned per
repository.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

MAX_SCORE = 7

_CODE_FENCE = re.compile(r"```")
_HEADING = re.compile(r"^#{1,3}\s", re.MULTILINE)
_INSTALL = re.compile(r"install|setup|getting started", re.IGNORECASE)
_USAGE = re.compile(r"usage|example|how to use", re.IGNORECASE)
_ARCHITECTURE = re.compile(r"architecture|structure|design|component", re.IGNORECASE)
_API = re.compile(r"api|endpoint|route", re.IGNORECASE)


class Strategy(str, Enum):
    INCREMENTAL = "incremental"
    ENHANCE = "enhance"
    FULL = "full"


@dataclass(frozen=True)
class QualityAssessment:
    strategy: Strategy
    reason: str
    score: int = 0

    @property
    def needs_full_codebase(self) -> bool:
        return self.strategy != Strategy.INCREMENTAL


def assess(existing_readme: Optional[str]) -> QualityAssessment:
    """Score ``existing_readme`` and map the score to a strategy.

    score >= 5 -> incremental, 3-4 -> enhance, otherwise (or no README) -> full.
    """
    if not existing_readme or not existing_readme.strip():
        return QualityAssessment(Strategy.FULL, "No README exists", 0)

    signals = [
        len(existing_readme.split()) > 500,
        len(_CODE_FENCE.findall(existing_readme)) >= 2,
        len(_HEADING.findall(existing_readme)) >= 5,
        bool(_INSTALL.search(existing_readme)),
        bool(_USAGE.search(existing_readme)),
        bool(_ARCHITECTURE.search(existing_readme)),
        bool(_API.search(existing_readme)),
    ]
    score = sum(signals)

    if score >= 5:
        return QualityAssessment(Strategy.INCREMENTAL, "README is comprehensive", score)
    if score >= 3:
        return QualityAssessment(Strategy.ENHANCE, "README exists but needs more depth", score)
    return QualityAssessment(Strategy.FULL, "README is too basic", score)
