from __future__ import annotations

import pytest

from tradegate.services.risk.accounting import SnapshotDocument, derive_snapshot_metrics


class TestSnapshotDocument:

    def test_dotted_path(self):
        doc = SnapshotDocument({"account": {"equity": 5000}})
        assert doc.get("account.equity") == 5000
        assert doc.get("account.balance") is None
        assert doc.get("account.equity.deeper") is None

    def test_non_mapping_input(self):
        assert SnapshotDocument(None).get("equity") is None
        assert SnapshotDocument([1, 2]).get("equity") is None  # type: ignore[arg-type]


class TestDeriveSnapshotMetrics:

    def test_realized_plus_open_positions(self):
        m = derive_snapshot_metrics(
            {
                "equity": 10000,
                "closed_pnl_today": -150,
                "positions": [
                    {"profit": -40, "swap": -5, "commission": -2},
                    {"profit": -10, "swap": 0, "commission": -3},
                ],
            }
        )
        assert m.open_positions == 2
        assert m.net_pnl == pytest.approx(-210.0)
        assert m.daily_loss_pct == pytest.approx(2.10)
        assert m.equity == 10000

    def test_explicit_daily_pnl_wins(self):
        m = derive_snapshot_metrics(
            {
                "metrics": {"equity": 5000, "daily_pnl": -73, "open_positions_count": 1},
                "closed_pnl_today": -999,
            }
        )
        assert m.open_positions == 1
        assert m.net_pnl == pytest.approx(-73.0)
        assert m.daily_loss_pct == pytest.approx(1.46)

    def test_equity_lookup_order(self):
        m = derive_snapshot_metrics({"balance": 100, "account_equity": 200, "daily_pnl": -10})
        assert m.equity == 200

    def test_profit_gives_zero_loss(self):
        m = derive_snapshot_metrics({"equity": 1000, "daily_pnl": 50})
        assert m.daily_loss_pct == 0.0
        assert m.net_pnl == 50

    def test_missing_equity_gives_zero_loss(self):
        m = derive_snapshot_metrics({"daily_pnl": -50})
        assert m.daily_loss_pct == 0.0

    def test_strings_and_bools_are_not_numbers(self):
        m = derive_snapshot_metrics({"equity": "10000", "balance": True, "daily_pnl": "-50"})
        assert m.equity == 0.0
        assert m.net_pnl == 0.0
        assert m.daily_loss_pct == 0.0

    def test_open_positions_array_alias(self):
        m = derive_snapshot_metrics({"open_positions": [{}, {}, {}]})
        assert m.open_positions == 3

    def test_garbage_never_raises(self):
        m = derive_snapshot_metrics({"positions": "nope", "metrics": 7, "equity": None})
        assert m.open_positions == 0
        assert m.equity == 0.0

    def test_empty(self):
        m = derive_snapshot_metrics(None)
        assert m.to_dict() == {"open_positions": 0, "daily_loss_pct": 0.0, "equity": 0.0, "net_pnl": 0.0}

    def test_daily_pnl_ignores_position_profit_but_counts_positions(self):
        m = derive_snapshot_metrics({"equity": 10000, "daily_pnl": -210, "positions": [{"profit": 20}, {"profit": -30}]})
        assert m.open_positions == 2
        assert m.net_pnl == pytest.approx(-210.0)
        assert m.daily_loss_pct == pytest.approx(2.10)

    def test_day_start_equity_with_realized_and_position_costs(self):
        m = derive_snapshot_metrics(
            {
                "day_start_equity": 5000,
                "realized_pnl_today": -60,
                "positions": [{"profit": -20, "swap": -1, "commission": -2}, {"profit": 10}],
            }
        )
        assert m.open_positions == 2
        assert m.equity == 5000
        assert m.net_pnl == pytest.approx(-73.0)
        assert m.daily_loss_pct == pytest.approx(1.46)

    def test_non_finite_values_are_absent(self):
        m = derive_snapshot_metrics(
            {"equity": 10000, "daily_pnl": float("nan"), "closed_pnl_today": -100, "open_positions_count": float("inf")}
        )
        assert m.net_pnl == pytest.approx(-100.0)
        assert m.daily_loss_pct == pytest.approx(1.0)
        assert m.open_positions == 0
