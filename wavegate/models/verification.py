"""Behavior verification and test-run result models."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DifferenceKind(str, Enum):
    SIGNATURE_REMOVED = "signature_removed"
    ARITY_CHANGED = "arity_changed"
    PARAMETER_RENAMED = "parameter_renamed"
    RETURN_CATEGORY_CHANGED = "return_category_changed"
    CONTROL_FLOW_CHANGED = "control_flow_changed"
    SIDE_EFFECT_REMOVED = "side_effect_removed"
    SYMBOL_RENAMED = "symbol_renamed"
    PARSE_FAILED = "parse_failed"


class BehaviorDifference(BaseModel):
    """A detected semantic discrepancy; always attached to a report."""

    model_config = ConfigDict(frozen=True)

    kind: DifferenceKind
    severity: Severity
    description: str
    location: str = ""  # "path:symbol" or "path:line"


class FunctionShape(BaseModel):
    """Structural summary of one function or method."""

    model_config = ConfigDict(frozen=True)

    name: str  # qualified, e.g. "Client.fetch"
    params: list[str] = []
    required_arity: int = 0
    has_varargs: bool = False
    return_category: str = "none"  # none | value | generator | unknown
    branch_count: int = 0
    loop_count: int = 0
    side_effect_calls: list[str] = []
    line: int = 0


class StructuralRepresentation(BaseModel):
    """What the parser capability returns for one file's content."""

    model_config = ConfigDict(frozen=True)

    language: str
    functions: dict[str, FunctionShape] = {}
    module_side_effect_calls: list[str] = []
    symbols: list[str] = []


class VerificationReport(BaseModel):
    """The Behavior Verifier's verdict for a batch."""

    model_config = ConfigDict(frozen=True)

    batch_id: str
    differences: list[BehaviorDifference] = []

    @property
    def critical(self) -> list[BehaviorDifference]:
        return [d for d in self.differences if d.severity == Severity.CRITICAL]

    @property
    def warnings(self) -> list[BehaviorDifference]:
        return [d for d in self.differences if d.severity != Severity.CRITICAL]

    @property
    def passed(self) -> bool:
        return not self.critical


class TestRunResult(BaseModel):
    """Narrow contract returned by the external test runner."""

    __test__ = False  # not a pytest test class

    model_config = ConfigDict(frozen=True)

    passed: bool
    failures: list[str] = []
    coverage: float | None = None
    timed_out: bool = False
    output: str = ""
