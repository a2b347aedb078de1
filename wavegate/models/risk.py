"""Risk scoring models: deterministic scores and the tunable weight table."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from wavegate.models.changes import TransformationKind


class RiskLevel(str, Enum):
    """Four-tier risk classification, ordered LOW < MEDIUM < HIGH < CRITICAL."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    @property
    def is_gated(self) -> bool:
        """HIGH and CRITICAL units need a human decision before commit."""
        return self in (RiskLevel.HIGH, RiskLevel.CRITICAL)

    @classmethod
    def highest(cls, levels: list[RiskLevel]) -> RiskLevel:
        if not levels:
            return cls.LOW
        return max(levels, key=lambda lvl: lvl.rank)


_LEVEL_ORDER: list[RiskLevel] = [
    RiskLevel.LOW,
    RiskLevel.MEDIUM,
    RiskLevel.HIGH,
    RiskLevel.CRITICAL,
]


class RiskFactor(BaseModel):
    """A single named contribution to a risk score."""

    model_config = ConfigDict(frozen=True)

    name: str
    contribution: float
    detail: str = ""


class RiskScore(BaseModel):
    """Score in 0..100 with its level and the factors that produced it."""

    model_config = ConfigDict(frozen=True)

    value: float = Field(ge=0.0, le=100.0)
    level: RiskLevel
    factors: list[RiskFactor] = []

    @property
    def requires_manual_approval(self) -> bool:
        return self.level.is_gated

    @property
    def requires_extended_testing(self) -> bool:
        """Gated levels run the full suite instead of the affected subset."""
        return self.level.is_gated


class RiskSignals(BaseModel):
    """The complete input tuple of the scoring function.

    Identical signals always produce an identical ``RiskScore``.
    ``coverage`` is a percentage; ``None`` means it was not measured.
    """

    model_config = ConfigDict(frozen=True)

    transformation_kind: TransformationKind
    files_affected: int = Field(default=1, ge=0)
    coverage: float | None = None
    security_match: bool = False
    statically_typed: bool = True
    security_families: list[str] = []


DEFAULT_KIND_WEIGHTS: dict[TransformationKind, float] = {
    TransformationKind.FORMATTING: 5.0,
    TransformationKind.DOCUMENTATION: 5.0,
    TransformationKind.IMPORT_CLEANUP: 10.0,
    TransformationKind.TYPE_ANNOTATION: 10.0,
    TransformationKind.MODERNIZE_SYNTAX: 20.0,
    TransformationKind.RENAME_SYMBOL: 25.0,
    TransformationKind.DEAD_CODE_REMOVAL: 25.0,
    TransformationKind.MOVE_SYMBOL: 30.0,
    TransformationKind.FUNCTION_EXTRACTION: 35.0,
    TransformationKind.COMPLEXITY_REDUCTION: 40.0,
    TransformationKind.API_MIGRATION: 45.0,
}


class RiskConfig(BaseModel):
    """Operator-tunable weight table and level cutoffs.

    Cutoffs are lower bounds: a value ``>= critical_cutoff`` is CRITICAL,
    ``>= high_cutoff`` HIGH, ``>= medium_cutoff`` MEDIUM, otherwise LOW.
    """

    model_config = ConfigDict(frozen=True)

    kind_weights: dict[TransformationKind, float] = dict(DEFAULT_KIND_WEIGHTS)
    default_kind_weight: float = 30.0

    per_file_penalty: float = 2.0
    max_files_penalty: float = 20.0

    low_coverage_threshold: float = 50.0
    high_coverage_threshold: float = 80.0
    coverage_penalty: float = 25.0

    security_penalty: float = 30.0
    dynamic_typing_penalty: float = 10.0

    medium_cutoff: float = 25.0
    high_cutoff: float = 50.0
    critical_cutoff: float = 75.0

    @model_validator(mode="after")
    def _check_ordering(self) -> RiskConfig:
        if not (0 <= self.medium_cutoff <= self.high_cutoff <= self.critical_cutoff <= 100):
            raise ValueError("risk cutoffs must satisfy 0 <= medium <= high <= critical <= 100")
        if self.low_coverage_threshold > self.high_coverage_threshold:
            raise ValueError("low_coverage_threshold must not exceed high_coverage_threshold")
        return self

    def level_for(self, value: float) -> RiskLevel:
        if value >= self.critical_cutoff:
            return RiskLevel.CRITICAL
        if value >= self.high_cutoff:
            return RiskLevel.HIGH
        if value >= self.medium_cutoff:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW
