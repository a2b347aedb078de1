"""Unit tests for the ProgressRenderer.

Tests Rich panel output, state color mapping, approval and shim
summaries, and chain status rendering.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from rich.console import Console
from rich.panel import Panel

from wavegate.models.plan import BatchStatus, PlanStatus, WaveStatus
from wavegate.models.risk import RiskLevel
from wavegate.monitor.projection import BatchProgress, ProgressSnapshot, WaveProgress
from wavegate.monitor.renderer import _BATCH_ICONS, _PLAN_STYLES, _WAVE_STYLES, ProgressRenderer


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_snapshot(
    chain_valid: bool = True,
    status: PlanStatus = PlanStatus.AWAITING_APPROVAL,
    status_reason: str = "",
) -> ProgressSnapshot:
    """A two-wave snapshot: one committed batch, one awaiting approval."""
    return ProgressSnapshot(
        plan_id="tp-test-001",
        title="format sources",
        status=status,
        status_reason=status_reason,
        waves=[
            WaveProgress(
                wave_id="tp-test-001/w1",
                order=0,
                status=WaveStatus.COMPLETED,
                boundary_reason="start",
                batches=[
                    BatchProgress(
                        batch_id="tp-test-001/w1/b1",
                        order=0,
                        status=BatchStatus.COMMITTED,
                        risk_value=7.0,
                        paths=["src/format_a.ts", "src/format_b.ts"],
                        reason="committed after tests passed",
                    ),
                ],
            ),
            WaveProgress(
                wave_id="tp-test-001/w2",
                order=1,
                status=WaveStatus.RUNNING,
                risk_level=RiskLevel.HIGH,
                boundary_reason="risk_tier",
                batches=[
                    BatchProgress(
                        batch_id="tp-test-001/w2/b1",
                        order=0,
                        status=BatchStatus.AWAITING_APPROVAL,
                        risk_level=RiskLevel.HIGH,
                        risk_value=62.0,
                        paths=["src/auth.ts"],
                        requires_approval=True,
                        approval_request_id="ar-0123456789ab",
                        link="sha256:" + "a" * 64,
                    ),
                ],
            ),
        ],
        pending_approvals=["ar-0123456789ab"],
        active_shims=["sh-000000000001"],
        chain_valid=chain_valid,
        last_updated=datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc),
    )


def _render_text(snapshot: ProgressSnapshot) -> str:
    console = Console(record=True, width=200, force_terminal=False)
    ProgressRenderer(console).print_snapshot(snapshot)
    return console.export_text()


# ---------------------------------------------------------------------------
# Test: State mappings
# ---------------------------------------------------------------------------


class TestStateMappings:
    @pytest.mark.parametrize("status", list(BatchStatus))
    def test_every_batch_status_has_icon(self, status):
        assert status in _BATCH_ICONS

    def test_every_wave_and_plan_status_styled(self):
        assert set(_WAVE_STYLES) == set(WaveStatus)
        assert set(_PLAN_STYLES) == set(PlanStatus)


# ---------------------------------------------------------------------------
# Test: Rendering
# ---------------------------------------------------------------------------


class TestRenderSnapshot:
    def test_returns_panel(self):
        assert isinstance(ProgressRenderer(Console()).render_snapshot(_make_snapshot()), Panel)

    def test_summary_line(self):
        text = _render_text(_make_snapshot())
        assert "tp-test-001" in text
        assert "awaiting_approval" in text
        assert "Committed: 1/2" in text
        assert "Pending approvals: 1" in text
        assert "Shims: 1" in text
        assert "format sources" in text

    def test_rows_for_waves_and_batches(self):
        text = _render_text(_make_snapshot())
        assert "w1" in text and "w2" in text
        assert "COMMITTED" in text
        assert "AWAITING APPROVAL" in text
        assert "src/auth.ts" in text
        assert "ar-0123456789ab" in text
        assert "high 62" in text

    def test_chain_valid(self):
        assert "Chain: valid" in _render_text(_make_snapshot(chain_valid=True))

    def test_chain_broken(self):
        assert "Chain: BROKEN" in _render_text(_make_snapshot(chain_valid=False))

    def test_status_reason_shown(self):
        text = _render_text(_make_snapshot(
            status=PlanStatus.PAUSED, status_reason="2 consecutive batch failures",
        ))
        assert "2 consecutive batch failures" in text
        assert "paused" in text

    def test_no_pending_approvals_line_when_none(self):
        snapshot = _make_snapshot().model_copy(update={"pending_approvals": [], "active_shims": []})
        text = _render_text(snapshot)
        assert "Pending approvals" not in text
        assert "Shims" not in text
