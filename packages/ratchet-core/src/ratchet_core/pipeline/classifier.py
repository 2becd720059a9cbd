"""Change classification and risk scoring.

ChangeClassifier is a pure function of a ChangeRequest and its
ClassifierConfig. Scoring steps, each recorded as a reason in order:

1. Start at ``base_score``.
2. Infrastructure-only diff: ``infra_only_adjustment``, leans operational.
3. Documentation-only diff: ``docs_only_adjustment``, leans operational.
4. Any security-sensitive path: ``security_adjustment`` and forces normal.
5. Large diff (lines): ``large_change_adjustment``.
6. Wide diff (files): ``many_files_adjustment``.
7. Clamp to 0..100.

The ``operational-change`` label can only relax the outcome: it is ignored
when security forced normal or the score is above ``hard_ceiling``.

Example:
    >>> classifier = ChangeClassifier()
    >>> result = classifier.classify(change)
    >>> result.category, result.risk_score
    (<ChangeCategory.OPERATIONAL: 'operational'>, 10)
"""

from __future__ import annotations

from fnmatch import fnmatchcase

import structlog

from ratchet_core.pipeline.errors import InvalidInputError
from ratchet_core.schemas.change import (
    OPERATIONAL_CHANGE_LABEL,
    ChangeCategory,
    ChangeClassification,
    ChangeRequest,
)
from ratchet_core.schemas.config import ClassifierConfig
from ratchet_core.telemetry.tracing import traced

logger = structlog.get_logger(__name__)

MIN_RISK_SCORE = 0
MAX_RISK_SCORE = 100


def matches_any(path: str, patterns: tuple[str, ...]) -> bool:
    """Whether ``path`` matches at least one glob pattern."""
    return any(fnmatchcase(path, pattern) for pattern in patterns)


class ChangeClassifier:
    """Assigns a category and risk score to a change.

    Attributes:
        config: Scoring weights, thresholds and path patterns.
    """

    def __init__(self, config: ClassifierConfig | None = None) -> None:
        self.config = config or ClassifierConfig()

    def validate(self, change: ChangeRequest) -> None:
        """Reject changes that cannot be classified.

        Raises:
            InvalidInputError: If the diff is empty and no override label is present.
        """
        if not change.diff_summary and OPERATIONAL_CHANGE_LABEL not in change.author_labels:
            raise InvalidInputError(
                "diff_summary",
                f"empty diff without the '{OPERATIONAL_CHANGE_LABEL}' label",
            )

    @traced(name="ratchet.classify")
    def classify(self, change: ChangeRequest) -> ChangeClassification:
        """Classify a change.

        Args:
            change: The change to classify.

        Returns:
            Category, clamped risk score and ordered reasons.

        Raises:
            InvalidInputError: If the change fails ``validate``.
        """
        self.validate(change)
        config = self.config
        paths = change.paths
        reasons: list[str] = []
        score = config.base_score
        reasons.append(f"base score {config.base_score}")

        leans_operational = False
        security_forced = False

        if paths and all(matches_any(p, config.infra_patterns) for p in paths):
            score += config.infra_only_adjustment
            leans_operational = True
            reasons.append(f"infrastructure-only change ({config.infra_only_adjustment:+d})")
        elif paths and all(matches_any(p, config.docs_patterns) for p in paths):
            score += config.docs_only_adjustment
            leans_operational = True
            reasons.append(f"documentation-only change ({config.docs_only_adjustment:+d})")

        sensitive = [p for p in paths if matches_any(p, config.security_patterns)]
        if sensitive:
            score += config.security_adjustment
            security_forced = True
            reasons.append(
                f"touches security-sensitive paths {sorted(sensitive)} "
                f"({config.security_adjustment:+d}, forces normal)"
            )

        total_lines = change.total_lines_changed
        if total_lines > config.large_change_lines:
            score += config.large_change_adjustment
            reasons.append(
                f"large change: {total_lines} lines > {config.large_change_lines} "
                f"({config.large_change_adjustment:+d})"
            )

        if len(paths) > config.many_files_threshold:
            score += config.many_files_adjustment
            reasons.append(
                f"wide change: {len(paths)} files > {config.many_files_threshold} "
                f"({config.many_files_adjustment:+d})"
            )

        clamped = max(MIN_RISK_SCORE, min(MAX_RISK_SCORE, score))
        if clamped != score:
            reasons.append(f"score clamped from {score} to {clamped}")
        score = clamped

        category = self._decide(change, score, leans_operational, security_forced, reasons)

        logger.info(
            "change_classified",
            change_id=change.id,
            category=category.value,
            risk_score=score,
        )
        return ChangeClassification(category=category, risk_score=score, reasons=reasons)

    def _decide(
        self,
        change: ChangeRequest,
        score: int,
        leans_operational: bool,
        security_forced: bool,
        reasons: list[str],
    ) -> ChangeCategory:
        config = self.config
        labelled = OPERATIONAL_CHANGE_LABEL in change.author_labels

        if security_forced:
            if labelled:
                reasons.append(f"'{OPERATIONAL_CHANGE_LABEL}' label ignored: security-sensitive")
            reasons.append("classified normal: security-sensitive change")
            return ChangeCategory.NORMAL

        if labelled:
            if score > config.hard_ceiling:
                reasons.append(
                    f"'{OPERATIONAL_CHANGE_LABEL}' label ignored: score {score} "
                    f"above hard ceiling {config.hard_ceiling}"
                )
                return ChangeCategory.NORMAL
            reasons.append(f"classified operational: '{OPERATIONAL_CHANGE_LABEL}' label")
            return ChangeCategory.OPERATIONAL

        if score >= config.threshold:
            reasons.append(f"classified normal: score {score} >= threshold {config.threshold}")
            return ChangeCategory.NORMAL

        if leans_operational:
            reasons.append(f"classified operational: score {score} < threshold {config.threshold}")
            return ChangeCategory.OPERATIONAL

        reasons.append("classified normal: application code change")
        return ChangeCategory.NORMAL


__all__ = ["ChangeClassifier", "matches_any"]
