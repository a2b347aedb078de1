"""Behavior Verifier: lightweight behavior-preservation checks.

Compares before/after structural representations of each file in a
batch.  Only CRITICAL differences block commitment:

- a function signature silently removed,
- a required-arity change,
- loss of a side-effecting call outside dead-code removal,
- content that no longer parses.

Everything else is recorded as a warning on the batch's audit trail.
What counts as "expected" depends on the declared transformation kind.
"""

from __future__ import annotations

import logging
from collections import Counter

from wavegate.collaborators.protocols import Parser
from wavegate.core.risk_assessor import detect_language
from wavegate.models.changes import FileChange, TransformationKind
from wavegate.models.plan import Batch
from wavegate.models.verification import (
    BehaviorDifference,
    DifferenceKind,
    FunctionShape,
    Severity,
    StructuralRepresentation,
    VerificationReport,
)

logger = logging.getLogger(__name__)

# Kinds whose purpose is to reshape control flow.
_FLOW_CHANGING_KINDS = frozenset({
    TransformationKind.COMPLEXITY_REDUCTION,
    TransformationKind.FUNCTION_EXTRACTION,
    TransformationKind.DEAD_CODE_REMOVAL,
    TransformationKind.MODERNIZE_SYNTAX,
    TransformationKind.API_MIGRATION,
})

# Kinds that legitimately replace one call with another.
_CALL_REPLACING_KINDS = frozenset({
    TransformationKind.RENAME_SYMBOL,
    TransformationKind.MOVE_SYMBOL,
    TransformationKind.API_MIGRATION,
})


def _short(name: str) -> str:
    return name.rsplit(".", 1)[-1]


class BehaviorVerifier:
    """Checks a batch's changes with an external parser capability.

    Parameters
    ----------
    parser:
        Any object implementing the ``Parser`` protocol.
    language:
        Forces one language for every file instead of extension detection.
    """

    def __init__(self, parser: Parser, language: str | None = None) -> None:
        self._parser = parser
        self._language = language

    # ------------------------------------------------------------------
    # Batch level
    # ------------------------------------------------------------------

    def verify_batch(self, batch: Batch) -> VerificationReport:
        parsed: dict[str, tuple[StructuralRepresentation | None, StructuralRepresentation | None]] = {}
        differences: list[BehaviorDifference] = []

        for change in batch.files:
            before, after, parse_diffs = self._parse_pair(change)
            parsed[change.path] = (before, after)
            differences.extend(parse_diffs)

        # Function names introduced anywhere in the batch, for move detection.
        introduced: dict[str, str] = {}
        for path, (before, after) in parsed.items():
            if after is None:
                continue
            before_names = set(before.functions) if before else set()
            for name in after.functions:
                if name not in before_names:
                    introduced.setdefault(_short(name), path)

        for change in batch.files:
            before, after = parsed[change.path]
            if before is None:
                continue
            differences.extend(
                self.compare(change.path, before, after, change.transformation_kind, introduced)
            )

        report = VerificationReport(batch_id=batch.batch_id, differences=differences)
        if report.critical:
            logger.warning(
                "Batch %s has %d critical behavior difference(s)",
                batch.batch_id, len(report.critical),
            )
        return report

    def _parse_pair(
        self, change: FileChange
    ) -> tuple[StructuralRepresentation | None, StructuralRepresentation | None, list[BehaviorDifference]]:
        language = self._language or detect_language(change.path)
        diffs: list[BehaviorDifference] = []

        before = None
        if change.before_content is not None:
            before = self._safe_parse(change.before_content, language)
            if before is None:
                diffs.append(BehaviorDifference(
                    kind=DifferenceKind.PARSE_FAILED,
                    severity=Severity.LOW,
                    description="original content could not be parsed; not verified",
                    location=change.path,
                ))

        after = None
        if change.after_content is not None:
            after = self._safe_parse(change.after_content, language)
            if after is None and (before is not None or change.is_creation):
                diffs.append(BehaviorDifference(
                    kind=DifferenceKind.PARSE_FAILED,
                    severity=Severity.CRITICAL,
                    description="transformed content does not parse",
                    location=change.path,
                ))
        if after is None and change.after_content is not None:
            # Unparseable output: structural comparison is meaningless.
            return None, None, diffs
        return before, after, diffs

    def _safe_parse(self, content: str, language: str) -> StructuralRepresentation | None:
        try:
            return self._parser.parse(content, language)
        except Exception as exc:  # noqa: BLE001 - parser is an external capability
            logger.debug("Parser failed on %s content: %s", language, exc)
            return None

    # ------------------------------------------------------------------
    # File level
    # ------------------------------------------------------------------

    def compare(
        self,
        path: str,
        before: StructuralRepresentation,
        after: StructuralRepresentation | None,
        kind: TransformationKind,
        introduced: dict[str, str] | None = None,
    ) -> list[BehaviorDifference]:
        """Differences between two representations of one file.

        ``after is None`` means the file is deleted.  *introduced* maps
        short names of functions added anywhere in the batch to their
        file, so moved symbols are recognised.
        """
        introduced = introduced or {}
        after_functions = after.functions if after else {}
        new_functions = {n: f for n, f in after_functions.items() if n not in before.functions}
        diffs: list[BehaviorDifference] = []

        for name, old in before.functions.items():
            location = f"{path}:{name}"
            new = after_functions.get(name)
            if new is None:
                diffs.append(self._removed(old, location, kind, new_functions, introduced, path))
                continue
            diffs.extend(self._compare_function(old, new, location, kind, new_functions))

        diffs.extend(self._module_effects(path, before, after, kind))
        return diffs

    def _removed(
        self,
        old: FunctionShape,
        location: str,
        kind: TransformationKind,
        new_functions: dict[str, FunctionShape],
        introduced: dict[str, str],
        path: str,
    ) -> BehaviorDifference:
        if kind == TransformationKind.RENAME_SYMBOL:
            for candidate in new_functions.values():
                if candidate.required_arity == old.required_arity and len(candidate.params) == len(old.params):
                    return BehaviorDifference(
                        kind=DifferenceKind.SYMBOL_RENAMED,
                        severity=Severity.LOW,
                        description=f"{old.name} renamed to {candidate.name}",
                        location=location,
                    )
        if kind in (TransformationKind.MOVE_SYMBOL, TransformationKind.FUNCTION_EXTRACTION):
            target = introduced.get(_short(old.name))
            if target and target != path:
                return BehaviorDifference(
                    kind=DifferenceKind.SYMBOL_RENAMED,
                    severity=Severity.LOW,
                    description=f"{old.name} moved to {target}",
                    location=location,
                )
        if kind == TransformationKind.DEAD_CODE_REMOVAL:
            return BehaviorDifference(
                kind=DifferenceKind.SIGNATURE_REMOVED,
                severity=Severity.MEDIUM,
                description=f"{old.name} removed as dead code",
                location=location,
            )
        return BehaviorDifference(
            kind=DifferenceKind.SIGNATURE_REMOVED,
            severity=Severity.CRITICAL,
            description=f"{old.name}({', '.join(old.params)}) was removed",
            location=location,
        )

    def _compare_function(
        self,
        old: FunctionShape,
        new: FunctionShape,
        location: str,
        kind: TransformationKind,
        new_functions: dict[str, FunctionShape],
    ) -> list[BehaviorDifference]:
        diffs: list[BehaviorDifference] = []

        positional_dropped = len(new.params) < len(old.params) and not new.has_varargs
        if (
            new.required_arity != old.required_arity
            or positional_dropped
            or (old.has_varargs and not new.has_varargs)
        ):
            diffs.append(BehaviorDifference(
                kind=DifferenceKind.ARITY_CHANGED,
                severity=Severity.CRITICAL,
                description=(
                    f"{old.name}: required arity {old.required_arity} -> {new.required_arity}, "
                    f"params {len(old.params)} -> {len(new.params)}"
                ),
                location=location,
            ))
        elif len(new.params) > len(old.params):
            diffs.append(BehaviorDifference(
                kind=DifferenceKind.ARITY_CHANGED,
                severity=Severity.LOW,
                description=f"{old.name}: optional parameter(s) added",
                location=location,
            ))
        elif new.params != old.params:
            diffs.append(BehaviorDifference(
                kind=DifferenceKind.PARAMETER_RENAMED,
                severity=Severity.LOW if kind == TransformationKind.RENAME_SYMBOL else Severity.MEDIUM,
                description=f"{old.name}: parameters {old.params} -> {new.params}",
                location=location,
            ))

        if (
            old.return_category != new.return_category
            and "unknown" not in (old.return_category, new.return_category)
        ):
            diffs.append(BehaviorDifference(
                kind=DifferenceKind.RETURN_CATEGORY_CHANGED,
                severity=Severity.HIGH,
                description=f"{old.name}: returns {old.return_category} -> {new.return_category}",
                location=location,
            ))

        if (old.branch_count, old.loop_count) != (new.branch_count, new.loop_count):
            diffs.append(BehaviorDifference(
                kind=DifferenceKind.CONTROL_FLOW_CHANGED,
                severity=Severity.LOW if kind in _FLOW_CHANGING_KINDS else Severity.HIGH,
                description=(
                    f"{old.name}: branches {old.branch_count} -> {new.branch_count}, "
                    f"loops {old.loop_count} -> {new.loop_count} under {kind.value}"
                ),
                location=location,
            ))

        diffs.extend(self._call_loss(old, new, location, kind, new_functions))
        return diffs

    def _call_loss(
        self,
        old: FunctionShape,
        new: FunctionShape,
        location: str,
        kind: TransformationKind,
        new_functions: dict[str, FunctionShape],
    ) -> list[BehaviorDifference]:
        missing = Counter(old.side_effect_calls) - Counter(new.side_effect_calls)
        if kind == TransformationKind.FUNCTION_EXTRACTION:
            # Calls that moved into an extracted helper are still made.
            extracted = Counter(c for f in new_functions.values() for c in f.side_effect_calls)
            missing -= extracted
        if not missing:
            return []

        names = sorted(missing.elements())
        added = Counter(new.side_effect_calls) - Counter(old.side_effect_calls)
        if kind == TransformationKind.DEAD_CODE_REMOVAL:
            severity = Severity.MEDIUM
        elif kind in _CALL_REPLACING_KINDS and sum(added.values()) >= len(names):
            severity = Severity.MEDIUM
        else:
            severity = Severity.CRITICAL
        return [BehaviorDifference(
            kind=DifferenceKind.SIDE_EFFECT_REMOVED,
            severity=severity,
            description=f"{old.name}: call(s) no longer made: {', '.join(names)}",
            location=location,
        )]

    def _module_effects(
        self,
        path: str,
        before: StructuralRepresentation,
        after: StructuralRepresentation | None,
        kind: TransformationKind,
    ) -> list[BehaviorDifference]:
        after_calls = after.module_side_effect_calls if after else []
        missing = Counter(before.module_side_effect_calls) - Counter(after_calls)
        if not missing:
            return []
        return [BehaviorDifference(
            kind=DifferenceKind.SIDE_EFFECT_REMOVED,
            severity=Severity.MEDIUM if kind == TransformationKind.DEAD_CODE_REMOVAL else Severity.CRITICAL,
            description=f"module-level call(s) no longer made: {', '.join(sorted(missing.elements()))}",
            location=f"{path}:<module>",
        )]
