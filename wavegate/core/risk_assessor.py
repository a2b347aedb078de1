"""Risk Assessor: deterministic scoring of file changes, batches and waves.

``score_signals`` is a pure function of ``(RiskSignals, RiskConfig)``:
identical inputs always give an identical ``RiskScore``.  Everything
else in this module only gathers the signals (language, coverage,
security-pattern matches) that feed it.
"""

from __future__ import annotations

import logging
import re
from pathlib import PurePosixPath

from wavegate.models.changes import FileChange, TransformationRequest
from wavegate.models.risk import RiskConfig, RiskFactor, RiskLevel, RiskScore, RiskSignals

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Language signals
# ---------------------------------------------------------------------------

LANGUAGE_EXTENSIONS: dict[str, str] = {
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".py": "python",
    ".pyw": "python",
    ".java": "java",
    ".go": "go",
    ".cs": "csharp",
    ".rb": "ruby",
    ".php": "php",
    ".rs": "rust",
    ".kt": "kotlin",
    ".kts": "kotlin",
    ".swift": "swift",
    ".cob": "cobol",
    ".cbl": "cobol",
}

STATICALLY_TYPED_LANGUAGES: frozenset[str] = frozenset({
    "typescript",
    "java",
    "go",
    "csharp",
    "rust",
    "kotlin",
    "swift",
    "cobol",
})


def detect_language(path: str) -> str:
    """Return the language for *path* by extension, or ``"unknown"``."""
    return LANGUAGE_EXTENSIONS.get(PurePosixPath(path).suffix.lower(), "unknown")


def is_statically_typed(language: str) -> bool:
    """Unknown languages count as dynamically typed."""
    return language.lower() in STATICALLY_TYPED_LANGUAGES


# ---------------------------------------------------------------------------
# Security-sensitive lexical patterns
# ---------------------------------------------------------------------------

SECURITY_PATTERNS: dict[str, re.Pattern[str]] = {
    "auth": re.compile(
        r"\b(auth\w*|login|logout|passw(or)?d\w*|session\w*|jwt|oauth\w*"
        r"|credential\w*|permission\w*)\b",
        re.IGNORECASE,
    ),
    "payment": re.compile(
        r"\b(payment\w*|billing|invoice\w*|stripe|card_?number|cvv|checkout|refund\w*)\b",
        re.IGNORECASE,
    ),
    "crypto": re.compile(
        r"\b(crypto\w*|encrypt\w*|decrypt\w*|cipher\w*|hmac|sha(1|256|512)|md5"
        r"|private_?key|signing_?key)\b",
        re.IGNORECASE,
    ),
    "query_construction": re.compile(
        r"(\braw_?query\b|\bexecute(many)?\s*\(|\.query\s*\("
        r"|\b(select|insert|update|delete)\b[^\n;]{0,80}\b(from|into|set|where)\b)",
        re.IGNORECASE,
    ),
}


def matches_security_pattern(change: FileChange) -> list[str]:
    """Return the names of every security family matched by *change*.

    The path and both contents are scanned.
    """
    haystacks = [change.path, change.before_content or "", change.after_content or ""]
    return [
        family
        for family, pattern in SECURITY_PATTERNS.items()
        if any(pattern.search(text) for text in haystacks)
    ]


# ---------------------------------------------------------------------------
# Pure scoring
# ---------------------------------------------------------------------------

def _coverage_penalty(coverage: float | None, config: RiskConfig) -> float:
    if coverage is None or coverage < config.low_coverage_threshold:
        return config.coverage_penalty
    if coverage >= config.high_coverage_threshold:
        return 0.0
    band = config.high_coverage_threshold - config.low_coverage_threshold
    return config.coverage_penalty * (config.high_coverage_threshold - coverage) / band


def score_signals(signals: RiskSignals, config: RiskConfig) -> RiskScore:
    """Map a signal tuple to a ``RiskScore``.

    Sum of: base weight of the transformation kind, a capped per-file
    penalty, a coverage penalty, a security penalty and a dynamic-typing
    penalty.  The sum is clamped to 0..100 and mapped to a level by the
    configured cutoffs.
    """
    base = config.kind_weights.get(signals.transformation_kind, config.default_kind_weight)
    files = min(signals.files_affected * config.per_file_penalty, config.max_files_penalty)
    coverage = _coverage_penalty(signals.coverage, config)
    security = config.security_penalty if signals.security_match else 0.0
    typing_penalty = 0.0 if signals.statically_typed else config.dynamic_typing_penalty

    factors = [
        RiskFactor(name="transformation_kind", contribution=base,
                   detail=signals.transformation_kind.value),
        RiskFactor(name="files_affected", contribution=files,
                   detail=str(signals.files_affected)),
        RiskFactor(
            name="coverage",
            contribution=round(coverage, 2),
            detail="unknown" if signals.coverage is None else f"{signals.coverage:g}%",
        ),
        RiskFactor(name="security_pattern", contribution=security,
                   detail=",".join(signals.security_families)),
        RiskFactor(name="dynamic_typing", contribution=typing_penalty),
    ]

    value = round(min(max(sum(f.contribution for f in factors), 0.0), 100.0), 2)
    return RiskScore(value=value, level=config.level_for(value), factors=factors)


def aggregate_scores(scores: list[RiskScore]) -> RiskScore:
    """Batch/wave risk: the riskiest member, plus a zero-weight size factor."""
    if not scores:
        return RiskScore(value=0.0, level=RiskLevel.LOW, factors=[])
    top = max(scores, key=lambda s: (s.level.rank, s.value))
    return RiskScore(
        value=top.value,
        level=top.level,
        factors=[
            *top.factors,
            RiskFactor(name="batch_size", contribution=0.0, detail=str(len(scores))),
        ],
    )


# ---------------------------------------------------------------------------
# Assessor
# ---------------------------------------------------------------------------

class RiskAssessor:
    """Gathers risk signals for changes and scores them.

    Parameters
    ----------
    config:
        Weight table and cutoffs.  Defaults to ``RiskConfig()``.
    """

    def __init__(self, config: RiskConfig | None = None) -> None:
        self._config = config or RiskConfig()

    @property
    def config(self) -> RiskConfig:
        return self._config

    def signals_for(
        self,
        change: FileChange,
        coverage: float | None = None,
        language: str | None = None,
    ) -> RiskSignals:
        lang = language or detect_language(change.path)
        families = matches_security_pattern(change)
        return RiskSignals(
            transformation_kind=change.transformation_kind,
            files_affected=1,
            coverage=coverage,
            security_match=bool(families),
            statically_typed=is_statically_typed(lang),
            security_families=families,
        )

    def assess_change(
        self,
        change: FileChange,
        coverage: float | None = None,
        language: str | None = None,
    ) -> RiskScore:
        score = score_signals(self.signals_for(change, coverage, language), self._config)
        logger.debug("Scored %s: %.2f (%s)", change.path, score.value, score.level.value)
        return score

    def assess_changes(self, request: TransformationRequest) -> dict[str, RiskScore]:
        """Score every change of a request, keyed by path."""
        return {
            change.path: self.assess_change(
                change, request.coverage.get(change.path), request.language
            )
            for change in request.changes
        }

    def assess_request(self, request: TransformationRequest) -> RiskScore:
        """Score a whole request as one unit.

        Uses the heaviest transformation kind, the total file count, the
        lowest measured coverage, and any security match across changes.
        """
        if not request.changes:
            return aggregate_scores([])

        weights = self._config.kind_weights
        kind = max(
            (c.transformation_kind for c in request.changes),
            key=lambda k: weights.get(k, self._config.default_kind_weight),
        )
        coverages = [request.coverage.get(c.path) for c in request.changes]
        families = sorted({f for c in request.changes for f in matches_security_pattern(c)})
        statically_typed = all(
            is_statically_typed(request.language or detect_language(c.path))
            for c in request.changes
        )
        signals = RiskSignals(
            transformation_kind=kind,
            files_affected=len(request.changes),
            coverage=None if None in coverages else min(coverages),
            security_match=bool(families),
            statically_typed=statically_typed,
            security_families=families,
        )
        return score_signals(signals, self._config)

    def assess_batch(self, scores: list[RiskScore]) -> RiskScore:
        return aggregate_scores(scores)

    def assess_wave(self, batch_scores: list[RiskScore]) -> RiskScore:
        return aggregate_scores(batch_scores)


