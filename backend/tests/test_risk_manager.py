"""Tests for the risk gatekeeper and position sizing."""

import pytest
from datetime import timedelta
from decimal import Decimal

from conftest import NOW
from core.models.config import EngineConfig, merge_portfolio_config
from core.models.portfolio import PortfolioState, Position
from core.risk_manager import QUANTITY_STEP, RiskManager, RiskReason
from core.timeframes import utc_day_key


def make_state(cash="10000", equity=None, positions=0, **kwargs) -> PortfolioState:
    state = PortfolioState(
        portfolio_id="p1",
        cash=Decimal(cash),
        equity=Decimal(equity if equity is not None else cash),
        **kwargs,
    )
    for i in range(positions):
        state.positions.append(
            Position(
                portfolio_id="p1",
                symbol=f"SYM{i}-USD",
                size=Decimal("1"),
                entry_price=Decimal("100"),
                signal_price=Decimal("100"),
                highest_close=Decimal("100"),
                opened_at=NOW - timedelta(hours=1),
            )
        )
    return state


@pytest.fixture
def manager():
    return RiskManager(EngineConfig())


class TestPositionSizing:
    """Tests for compute_position_size."""

    def test_risk_based_quantity(self, manager):
        size = manager.compute_position_size(
            Decimal("10000"), Decimal("50000"), Decimal("49500")
        )

        assert size.ok
        assert size.quantity == Decimal("0.1")
        assert size.risk_dollars == Decimal("50")
        assert size.per_unit_risk == Decimal("500")
        assert size.quantity * Decimal("50000") == Decimal("5000")

    def test_loss_at_stop_equals_risk(self, manager):
        size = manager.compute_position_size(Decimal("20000"), Decimal("200"), Decimal("190"))
        assert size.quantity * (Decimal("200") - Decimal("190")) == Decimal("100")

    def test_cash_cap_governs(self, manager):
        size = manager.compute_position_size(
            Decimal("10000"), Decimal("50000"), Decimal("49500"), available_cash=Decimal("1000")
        )

        assert size.ok
        assert size.quantity == Decimal("0.02")
        assert size.max_affordable_qty == Decimal("0.02")

    @pytest.mark.parametrize("cash", ["0.5", "3", "333.33", "1234.5678", "9999.99"])
    def test_cost_never_exceeds_cash(self, manager, cash):
        entry = Decimal("12345.67")
        size = manager.compute_position_size(
            Decimal("1000000"), entry, Decimal("12000"), available_cash=Decimal(cash)
        )

        assert size.ok
        assert size.quantity * entry <= Decimal(cash)

    @pytest.mark.parametrize("risk_pct", [0.001, 0.005, 0.02, 0.1, 1.0])
    @pytest.mark.parametrize(
        "equity,cash,entry,stop",
        [
            ("10000", "10000", "50000", "49500"),
            ("10000", "250", "50000", "49950"),
            ("50000", "1200.5", "3.1415", "3.1"),
            ("1000", "999.99", "0.0123", "0.0122"),
            ("250000", "17.3", "987.65", "900"),
            ("10000", "0.00001", "50000", "40000"),
        ],
    )
    def test_cost_within_cash_for_any_risk_pct(self, risk_pct, equity, cash, entry, stop):
        config = merge_portfolio_config(EngineConfig(), {"risk": {"risk_per_trade_pct": risk_pct}})
        manager = RiskManager(config)
        assert config.risk.risk_per_trade_pct == risk_pct

        size = manager.compute_position_size(
            Decimal(equity), Decimal(entry), Decimal(stop), available_cash=Decimal(cash)
        )

        if not size.ok:
            assert size.reason == RiskReason.INVALID_QUANTITY
            return
        assert size.quantity > 0
        assert size.quantity * Decimal(entry) <= Decimal(cash)
        risk_budget = Decimal(equity) * Decimal(str(risk_pct))
        assert size.quantity * (Decimal(entry) - Decimal(stop)) <= risk_budget

    def test_quantity_truncated_to_lot_step(self, manager):
        size = manager.compute_position_size(Decimal("10000"), Decimal("3"), Decimal("2.9"))
        assert size.quantity == size.quantity.quantize(QUANTITY_STEP)

    def test_stop_equal_to_entry(self, manager):
        size = manager.compute_position_size(Decimal("10000"), Decimal("100"), Decimal("100"))

        assert not size.ok
        assert size.reason == RiskReason.INVALID_STOP

    def test_no_cash_gives_invalid_quantity(self, manager):
        size = manager.compute_position_size(
            Decimal("10000"), Decimal("100"), Decimal("99"), available_cash=Decimal("0")
        )
        assert size.reason == RiskReason.INVALID_QUANTITY

    def test_negative_cash_is_treated_as_zero(self, manager):
        size = manager.compute_position_size(
            Decimal("10000"), Decimal("100"), Decimal("99"), available_cash=Decimal("-50")
        )
        assert size.reason == RiskReason.INVALID_QUANTITY

    def test_dust_quantity_rounds_to_invalid(self, manager):
        size = manager.compute_position_size(
            Decimal("10000"), Decimal("1000000000"), Decimal("999"), available_cash=Decimal("1")
        )
        assert size.reason == RiskReason.INVALID_QUANTITY

    @pytest.mark.parametrize(
        "equity,entry,stop,reason",
        [
            ("0", "100", "99", RiskReason.INVALID_EQUITY),
            ("-5", "100", "99", RiskReason.INVALID_EQUITY),
            ("NaN", "100", "99", RiskReason.INVALID_EQUITY),
            ("10000", "0", "99", RiskReason.INVALID_ENTRY_PRICE),
            ("10000", "Infinity", "99", RiskReason.INVALID_ENTRY_PRICE),
            ("10000", "100", "0", RiskReason.INVALID_STOP_PRICE),
            ("10000", "100", "-1", RiskReason.INVALID_STOP_PRICE),
        ],
    )
    def test_invalid_inputs(self, manager, equity, entry, stop, reason):
        size = manager.compute_position_size(Decimal(equity), Decimal(entry), Decimal(stop))
        assert not size.ok
        assert size.reason == reason

    def test_none_stop(self, manager):
        size = manager.compute_position_size(Decimal("10000"), Decimal("100"), None)
        assert size.reason == RiskReason.INVALID_STOP_PRICE


class TestEntryGates:
    """Tests for can_open_position."""

    def test_allowed_returns_effective_risk(self, manager):
        decision = manager.can_open_position(make_state(), NOW)

        assert decision.allowed
        assert decision.reason is None
        assert decision.risk == manager.risk

    def test_max_positions(self, manager):
        decision = manager.can_open_position(make_state(positions=1), NOW)

        assert not decision.allowed
        assert decision.reason == RiskReason.MAX_POSITIONS
        assert decision.details == {"open_positions": 1, "max_open_positions": 1}

    def test_max_positions_from_overrides(self):
        manager = RiskManager(
            merge_portfolio_config(EngineConfig(), {"risk": {"max_open_positions": 3}})
        )
        assert manager.can_open_position(make_state(positions=2), NOW).allowed
        assert not manager.can_open_position(make_state(positions=3), NOW).allowed

    @pytest.mark.parametrize("equity", ["0", "-100"])
    def test_insufficient_equity(self, manager, equity):
        decision = manager.can_open_position(make_state(equity=equity), NOW)
        assert decision.reason == RiskReason.INSUFFICIENT_EQUITY

    def test_equity_checked_before_positions(self, manager):
        decision = manager.can_open_position(make_state(equity="0", positions=1), NOW)
        assert decision.reason == RiskReason.INSUFFICIENT_EQUITY

    def test_daily_outflow_limit(self):
        manager = RiskManager(
            merge_portfolio_config(EngineConfig(), {"risk": {"max_daily_net_outflow_pct": 0.5}})
        )
        today = utc_day_key(NOW)

        blocked = make_state(day_key=today, buy_value_today=Decimal("5000"))
        decision = manager.can_open_position(blocked, NOW)
        assert decision.reason == RiskReason.DAILY_OUTFLOW_LIMIT
        assert decision.details["today_net_outflow_proxy"] == Decimal("-5000")
        assert manager.is_daily_outflow_limit_hit(blocked, NOW)

        under = make_state(day_key=today, buy_value_today=Decimal("4999"))
        assert manager.can_open_position(under, NOW).allowed

    def test_sells_offset_buys(self):
        manager = RiskManager(
            merge_portfolio_config(EngineConfig(), {"risk": {"max_daily_net_outflow_pct": 0.5}})
        )
        state = make_state(
            day_key=utc_day_key(NOW),
            buy_value_today=Decimal("8000"),
            sell_value_today=Decimal("4000"),
        )
        assert manager.today_outflow(state, NOW) == Decimal("-4000")
        assert manager.can_open_position(state, NOW).allowed

    def test_previous_day_outflow_does_not_block(self):
        manager = RiskManager(
            merge_portfolio_config(EngineConfig(), {"risk": {"max_daily_net_outflow_pct": 0.5}})
        )
        yesterday = utc_day_key(NOW - timedelta(days=1))
        state = make_state(day_key=yesterday, buy_value_today=Decimal("9000"))

        assert manager.today_outflow(state, NOW) == Decimal("0")
        assert manager.can_open_position(state, NOW).allowed

    def test_cooldown_blocks_inside_window(self, manager):
        # 6 bars of 5m = 30 minutes
        assert manager.cooldown_window == timedelta(minutes=30)

        state = make_state(last_stop_out_at=NOW - timedelta(minutes=29))
        decision = manager.can_open_position(state, NOW)

        assert decision.reason == RiskReason.COOLDOWN
        assert decision.details["remaining_seconds"] == 60.0

    def test_cooldown_expires_exactly_at_window(self, manager):
        state = make_state(last_stop_out_at=NOW - timedelta(minutes=30))
        assert manager.can_open_position(state, NOW).allowed

    def test_cooldown_uses_signal_timeframe(self):
        manager = RiskManager(
            merge_portfolio_config(
                EngineConfig(),
                {
                    "timeframes": {"signal_timeframe": "15m"},
                    "risk": {"cooldown_bars_after_stop": 2},
                },
            )
        )
        assert manager.cooldown_window == timedelta(minutes=30)
        assert manager.is_cooldown_active(NOW - timedelta(minutes=20), NOW)

    def test_zero_cooldown_bars(self):
        manager = RiskManager(
            merge_portfolio_config(EngineConfig(), {"risk": {"cooldown_bars_after_stop": 0}})
        )
        assert not manager.is_cooldown_active(NOW, NOW)

    def test_gate_does_not_mutate_state(self, manager):
        state = make_state(positions=1)
        before = state.model_dump()
        manager.can_open_position(state, NOW)
        assert state.model_dump() == before


class TestBookkeeping:
    """Tests for stop-out and realized P&L tracking."""

    def test_record_stop_out_arms_cooldown(self, manager):
        state = make_state()
        manager.record_stop_out(state, NOW)

        assert state.last_stop_out_at == NOW
        assert manager.can_open_position(state, NOW + timedelta(minutes=5)).reason == (
            RiskReason.COOLDOWN
        )

    def test_realized_pnl_rolls_at_midnight(self, manager):
        state = make_state()
        manager.track_realized_pnl(state, Decimal("-25"), NOW)
        manager.track_realized_pnl(state, Decimal("10"), NOW + timedelta(hours=1))
        assert state.realized_pnl_today == Decimal("-15")

        manager.track_realized_pnl(state, Decimal("7"), NOW + timedelta(days=1))
        assert state.realized_pnl_today == Decimal("7")

    def test_requires_config(self):
        with pytest.raises(ValueError):
            RiskManager(None)
