"""Tests for trailing-stop maintenance and exit detection."""

import pytest
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

from conftest import NOW, make_candle
from core.execution import CloseResult, ExecutionReason, ExecutionService
from core.models.config import EngineConfig
from core.models.portfolio import ExitReason, Position
from core.position_manager import PositionManager, detect_exit, update_trailing
from core.risk_manager import RiskManager, RiskReason


def make_position(**kwargs) -> Position:
    params = dict(
        portfolio_id="p1",
        symbol="BTC-USD",
        size=Decimal("1"),
        entry_price=Decimal("100"),
        signal_price=Decimal("100"),
        stop_price=Decimal("95"),
        take_profit_price=Decimal("120"),
        highest_close=Decimal("100"),
        opened_at=NOW - timedelta(hours=1),
    )
    params.update(kwargs)
    return Position(**params)


@pytest.fixture
def persist():
    return MagicMock()


@pytest.fixture
def service(persist):
    svc = ExecutionService(persist=persist)
    state = svc.ensure_portfolio("p1", Decimal("1000"))
    state.positions.append(make_position())
    return svc


@pytest.fixture
def manager(service):
    return PositionManager(service)


def tick(manager, candle, now=NOW, config=None):
    return manager.evaluate("p1", "BTC-USD", candle, now, config or EngineConfig())


class TestTrailing:
    """Tests for update_trailing."""

    def test_not_activated_below_threshold(self):
        position = make_position()
        update_trailing(position, make_candle(open_="100.5", close="100.9"), EngineConfig().risk)

        assert not position.trail_active
        assert position.trail_stop is None
        assert position.highest_close == Decimal("100.9")

    def test_activation_at_threshold(self):
        position = make_position()
        update_trailing(position, make_candle(open_="100.5", close="101"), EngineConfig().risk)

        assert position.trail_active
        assert position.trail_stop == Decimal("100.495")

    def test_ratchet_only_moves_up(self):
        position = make_position()
        risk = EngineConfig().risk
        update_trailing(position, make_candle(open_="101", close="104"), risk)
        stop = position.trail_stop

        update_trailing(position, make_candle(open_="103", close="102"), risk)

        assert position.trail_stop == stop
        assert position.highest_close == Decimal("104")


class TestDetectExit:
    """Tests for exit priority."""

    def test_stop_wins_over_take_profit(self):
        candle = make_candle(open_="100", close="100", high="121", low="94")
        assert detect_exit(make_position(), candle) == (ExitReason.STOP, Decimal("95"))

    def test_take_profit_wins_over_trail(self):
        position = make_position(trail_active=True, trail_stop=Decimal("110"))
        candle = make_candle(open_="115", close="118", high="121", low="109")
        assert detect_exit(position, candle) == (ExitReason.TP, Decimal("120"))

    def test_inactive_trail_is_ignored(self):
        position = make_position(trail_stop=Decimal("110"))
        candle = make_candle(open_="111", close="111", high="112", low="109")
        assert detect_exit(position, candle) is None

    def test_levels_are_inclusive(self):
        assert detect_exit(make_position(), make_candle(low="95", high="101"))[0] == ExitReason.STOP
        assert detect_exit(make_position(), make_candle(low="99", high="120"))[0] == ExitReason.TP

    def test_no_stop_or_target(self):
        position = make_position(stop_price=None, take_profit_price=None)
        candle = make_candle(open_="50", close="200", high="300", low="1")
        assert detect_exit(position, candle) is None


class TestPositionManager:
    """Tests for PositionManager.evaluate."""

    def test_stop_out_closes_and_arms_cooldown(self, manager, service):
        candle = make_candle(open_="100", close="100", high="121", low="94")
        decision = tick(manager, candle)

        assert decision.action == "EXIT"
        assert decision.reason == "STOP"
        assert decision.close.ok
        assert decision.close.fill_price == Decimal("95") * Decimal("0.9995")

        state = service.get_portfolio_state("p1")
        assert state.positions == []
        assert state.last_stop_out_at == NOW
        gate = RiskManager(EngineConfig()).can_open_position(state, NOW + timedelta(minutes=10))
        assert gate.reason == RiskReason.COOLDOWN

    def test_take_profit_does_not_arm_cooldown(self, manager, service):
        decision = tick(manager, make_candle(open_="118", close="119", high="120.5", low="117"))

        assert decision.reason == "TP"
        assert decision.close.fill_price == Decimal("120") * Decimal("0.9995")
        assert service.get_portfolio_state("p1").last_stop_out_at is None

    def test_trailing_sequence(self, manager, service, persist):
        first = tick(manager, make_candle(open_="101.8", close="102"))
        assert first.action == "HOLD"
        assert first.reason == "NO_EXIT"
        assert first.trail_active
        assert first.trail_stop == Decimal("101.490")

        second = tick(
            manager,
            make_candle(timestamp=NOW + timedelta(minutes=5), open_="103.8", close="104"),
            NOW + timedelta(minutes=5),
        )
        assert second.reason == "NO_EXIT"
        assert second.trail_stop == Decimal("103.480")

        third = tick(
            manager,
            make_candle(
                timestamp=NOW + timedelta(minutes=10),
                open_="103.5",
                close="103.2",
                high="103.6",
                low="102.9",
            ),
            NOW + timedelta(minutes=10),
        )
        assert third.action == "EXIT"
        assert third.reason == "TRAIL"
        assert third.close.fill_price == Decimal("103.48") * Decimal("0.9995")
        assert service.get_open_position("p1", "BTC-USD") is None

    def test_trailing_change_is_persisted(self, manager, persist):
        tick(manager, make_candle(open_="101.8", close="102"))

        requests = [c.args[0] for c in persist.call_args_list]
        assert [r.kind for r in requests] == ["position"]
        assert requests[0].payload["trail_active"] is True
        assert requests[0].payload["status"] == "OPEN"

    def test_unchanged_trailing_is_not_persisted(self, manager, persist):
        tick(manager, make_candle(open_="100.2", close="100.4"))
        persist.assert_not_called()

    def test_no_position(self, manager):
        decision = manager.evaluate("p1", "ETH-USD", make_candle(symbol="ETH-USD"), NOW, EngineConfig())
        assert decision.action == "HOLD"
        assert decision.reason == "NO_POSITION"

    def test_missing_candle(self, manager, service):
        decision = tick(manager, None)

        assert decision.reason == "MISSING_CANDLE"
        assert service.get_open_position("p1", "BTC-USD") is not None

    def test_to_dict(self, manager):
        data = tick(manager, make_candle(open_="100", close="100", low="94")).to_dict()
        assert data["action"] == "EXIT"
        assert data["close"]["exit_reason"] == "STOP"

    def test_already_managed_candle_is_skipped(self, service, manager, persist):
        position = service.get_open_position("p1", "BTC-USD")
        position.last_candle_at = NOW

        decision = tick(manager, make_candle(open_="100", close="100", high="121", low="94"))

        assert decision.action == "HOLD"
        assert decision.reason == "NO_NEW_CANDLE"
        assert service.get_open_position("p1", "BTC-USD") is position
        assert service.get_portfolio_state("p1").last_stop_out_at is None
        persist.assert_not_called()

    def test_newer_candle_is_managed(self, service, manager):
        position = service.get_open_position("p1", "BTC-USD")
        position.last_candle_at = NOW - timedelta(minutes=5)

        decision = tick(manager, make_candle(open_="100.2", close="100.4"))

        assert decision.reason == "NO_EXIT"
        assert position.last_candle_at == NOW


class TestFailedClose:
    """An exit whose fill is rejected leaves the position open."""

    def test_rejected_close_holds(self):
        position = make_position()
        execution = MagicMock()
        execution.get_open_position.return_value = position
        execution.close_position.return_value = CloseResult(
            ok=False, reason=ExecutionReason.POSITION_NOT_FOUND
        )
        manager = PositionManager(execution)

        decision = tick(manager, make_candle(open_="100", close="100", low="94"))

        assert decision.action == "HOLD"
        assert decision.reason == "POSITION_NOT_FOUND"
        assert decision.close.ok is False
        execution.get_portfolio_state.assert_not_called()
