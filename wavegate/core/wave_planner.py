"""Wave Planner: partitions scored file changes into waves of batches.

Three passes:

1. Risk-weighted topological ordering (Kahn's algorithm with a ready set
   ordered by risk ascending, ties broken by submission order).
2. Greedy folding of the ordered sequence into batches under the
   ``PlannerLimits`` caps and compatibility rules.
3. Grouping of consecutive batches into waves, breaking on a gated/ungated
   tier change or a dependency boundary.

The dependency relation is taken from ``FileChange.depends_on``; paths
that are not part of the request are ignored.
"""

from __future__ import annotations

import difflib
import heapq
import logging

from wavegate.core.errors import CyclicDependencyError, PlanningError
from wavegate.core.risk_assessor import aggregate_scores
from wavegate.models.changes import FileChange, TransformationRequest
from wavegate.models.config import PlannerLimits
from wavegate.models.plan import Batch, TransformationPlan, Wave
from wavegate.models.risk import RiskLevel, RiskScore

logger = logging.getLogger(__name__)


def estimate_lines_changed(change: FileChange) -> int:
    """Count added plus removed lines in the unified diff of a change."""
    before = (change.before_content or "").splitlines()
    after = (change.after_content or "").splitlines()
    count = 0
    for line in difflib.unified_diff(before, after, lineterm="", n=0):
        if line.startswith(("---", "+++", "@@")):
            continue
        if line.startswith(("+", "-")):
            count += 1
    return count


class WavePlanner:
    """Builds an immutable ``TransformationPlan`` from scored changes.

    Parameters
    ----------
    limits:
        Batch caps and compatibility rules.
    """

    def __init__(self, limits: PlannerLimits | None = None) -> None:
        self._limits = limits or PlannerLimits()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def plan_request(
        self,
        request: TransformationRequest,
        scores: dict[str, RiskScore],
        *,
        plan_id: str | None = None,
    ) -> TransformationPlan:
        """Plan a whole request; see ``plan``."""
        return self.plan(
            request.changes,
            scores,
            plan_id=plan_id,
            request_id=request.request_id,
            title=request.title,
            branch=request.branch,
            feature_flag_key=request.feature_flag_key,
        )

    def plan(
        self,
        changes: list[FileChange],
        scores: dict[str, RiskScore],
        *,
        plan_id: str | None = None,
        request_id: str = "",
        title: str = "",
        branch: str = "wavegate/transform",
        feature_flag_key: str | None = None,
    ) -> TransformationPlan:
        """Produce a plan, or raise ``PlanningError`` without side effects.

        An empty change list yields an empty plan.
        """
        header: dict = {
            "request_id": request_id,
            "title": title,
            "branch": branch,
            "feature_flag_key": feature_flag_key,
        }
        if plan_id:
            header["plan_id"] = plan_id
        skeleton = TransformationPlan(**header)

        if not changes:
            return skeleton

        missing = [c.path for c in changes if c.path not in scores]
        if missing:
            raise PlanningError(f"No risk score for: {', '.join(missing)}")

        ordered = self.order_changes(changes, scores)
        batches = self._fold_batches(ordered, scores)
        waves = self._group_waves(skeleton.plan_id, batches, scores)

        plan = skeleton.model_copy(update={"waves": waves})
        logger.info(
            "Planned %s: %d change(s) in %d batch(es) across %d wave(s)",
            plan.plan_id, len(changes), len(plan.batches), len(waves),
        )
        return plan

    def order_changes(
        self, changes: list[FileChange], scores: dict[str, RiskScore]
    ) -> list[FileChange]:
        """Risk-weighted Kahn ordering; raises on duplicates and cycles."""
        by_path: dict[str, FileChange] = {}
        for change in changes:
            if change.path in by_path:
                raise PlanningError(f"Duplicate change for path {change.path}")
            by_path[change.path] = change

        index = {c.path: i for i, c in enumerate(changes)}
        in_degree = {c.path: 0 for c in changes}
        dependents: dict[str, list[str]] = {c.path: [] for c in changes}
        for change in changes:
            for dep in dict.fromkeys(change.depends_on):
                if dep not in by_path:
                    logger.debug("%s depends on %s outside the request; ignored", change.path, dep)
                    continue
                in_degree[change.path] += 1
                dependents[dep].append(change.path)

        ready = [
            (scores[path].value, index[path], path)
            for path, degree in in_degree.items()
            if degree == 0
        ]
        heapq.heapify(ready)

        ordered: list[FileChange] = []
        while ready:
            _, _, path = heapq.heappop(ready)
            ordered.append(by_path[path])
            for dependent in dependents[path]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, (scores[dependent].value, index[dependent], dependent))

        if len(ordered) != len(changes):
            remaining = {p for p, d in in_degree.items() if d > 0}
            cycle = self._find_cycle(remaining, by_path)
            raise CyclicDependencyError(
                f"Cyclic dependency between changes: {' -> '.join(cycle)}",
                cycle_paths=cycle,
            )
        return ordered

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _find_cycle(remaining: set[str], by_path: dict[str, FileChange]) -> list[str]:
        """Walk dependency edges inside *remaining* until a node repeats."""
        start = min(remaining)
        seen: list[str] = []
        node = start
        while node not in seen:
            seen.append(node)
            node = next(
                dep for dep in sorted(by_path[node].depends_on) if dep in remaining
            )
        return seen[seen.index(node):] + [node]

    def _compatible(
        self,
        members: list[FileChange],
        candidate: FileChange,
        scores: dict[str, RiskScore],
    ) -> bool:
        limits = self._limits
        if len(members) >= limits.max_files_per_batch:
            return False

        member_paths = {m.path for m in members}
        if any(dep in member_paths for dep in candidate.depends_on):
            return False
        if any(candidate.path in m.depends_on for m in members):
            return False

        levels = [scores[m.path].level for m in members] + [scores[candidate.path].level]
        if limits.isolate_critical and RiskLevel.CRITICAL in levels:
            return False
        ranks = [lvl.rank for lvl in levels]
        if max(ranks) - min(ranks) > limits.max_level_spread:
            return False
        # A batch is either wholly gated or wholly ungated.
        return len({lvl.is_gated for lvl in levels}) == 1

    def _fold_batches(
        self, ordered: list[FileChange], scores: dict[str, RiskScore]
    ) -> list[tuple[list[FileChange], int]]:
        limits = self._limits
        batches: list[tuple[list[FileChange], int]] = []
        members: list[FileChange] = []
        lines = 0

        def close() -> None:
            nonlocal members, lines
            if members:
                batches.append((members, lines))
            members, lines = [], 0

        for change in ordered:
            change_lines = estimate_lines_changed(change)

            if change_lines > limits.max_lines_per_batch:
                if not limits.allow_oversized_changes:
                    raise PlanningError(
                        f"{change.path} changes ~{change_lines} lines, over the "
                        f"{limits.max_lines_per_batch}-line batch budget"
                    )
                logger.warning(
                    "%s changes ~%d lines (budget %d); placing it in its own batch",
                    change.path, change_lines, limits.max_lines_per_batch,
                )
                close()
                members, lines = [change], change_lines
                close()
                continue

            if members and (
                lines + change_lines > limits.max_lines_per_batch
                or not self._compatible(members, change, scores)
            ):
                close()
            members.append(change)
            lines += change_lines

        close()
        return batches

    def _group_waves(
        self,
        plan_id: str,
        folded: list[tuple[list[FileChange], int]],
        scores: dict[str, RiskScore],
    ) -> list[Wave]:
        waves: list[Wave] = []
        current: list[Batch] = []
        current_paths: set[str] = set()
        reason = "start"

        def close(next_reason: str) -> None:
            nonlocal current, current_paths, reason
            if current:
                order = len(waves)
                wave_id = f"{plan_id}/w{order + 1}"
                batches = [
                    b.model_copy(update={"batch_id": f"{wave_id}/b{j + 1}", "order": j})
                    for j, b in enumerate(current)
                ]
                waves.append(
                    Wave(
                        wave_id=wave_id,
                        order=order,
                        batches=batches,
                        prerequisite_wave_ids=[waves[-1].wave_id] if waves else [],
                        risk=aggregate_scores([b.risk for b in batches]),
                        boundary_reason=reason,
                    )
                )
            current, current_paths, reason = [], set(), next_reason

        for members, lines in folded:
            batch = Batch(
                batch_id="",
                order=0,
                files=members,
                risk=aggregate_scores([scores[m.path] for m in members]),
                estimated_lines_changed=lines,
            )
            if current:
                if batch.risk_level.is_gated != current[0].risk_level.is_gated:
                    close("risk_tier")
                elif any(dep in current_paths for m in members for dep in m.depends_on):
                    close("dependency")
                elif len(current) >= self._limits.max_batches_per_wave:
                    close("size")
            current.append(batch)
            current_paths.update(m.path for m in members)

        close("")
        return waves
