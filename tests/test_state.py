"""
Tests for running statistics and the daily rollover.
"""

from datetime import date, timedelta

import pytest

from core.state import RunningStatistics


DAY = date(2024, 3, 1)


def test_trade_counters():
    stats = RunningStatistics(start_balance=500, today=DAY)
    stats.record_signal()
    stats.record_signal()
    stats.record_signal_ignored()
    stats.record_trade_opened()

    assert stats.record_trade_result(12.5) is True
    assert stats.record_trade_result(0.0) is True
    assert stats.record_trade_result(-2.5) is False

    snap = stats.snapshot()
    assert snap.total_signals == 2
    assert snap.signals_ignored == 1
    assert snap.daily_trades == 1
    assert snap.total_trades == 1
    assert (snap.win_trades, snap.lose_trades) == (2, 1)
    assert snap.total_profit == pytest.approx(10.0)
    assert snap.win_rate == pytest.approx(200 / 3)


def test_win_rate_without_closed_trades():
    assert RunningStatistics(today=DAY).snapshot().win_rate == 0.0


def test_balances():
    stats = RunningStatistics(start_balance=1000, today=DAY)
    stats.update_balance(1100)

    assert stats.start_balance == 1000
    assert stats.current_balance == 1100

    stats.set_start_balance(900)
    assert stats.start_balance == stats.current_balance == 900


def test_rollover_clears_daily_counters_only():
    stats = RunningStatistics(today=DAY)
    stats.record_signal()
    stats.record_signal_ignored()
    stats.record_trade_opened()
    stats.record_trade_result(3.0)

    assert not stats.rollover_if_new_day(DAY)
    assert not stats.rollover_if_new_day(DAY - timedelta(days=1))
    assert stats.rollover_if_new_day(DAY + timedelta(days=1))

    snap = stats.snapshot()
    assert snap.daily_trades == 0
    assert snap.signals_ignored == 0
    assert snap.total_signals == 1
    assert snap.total_trades == 1
    assert snap.last_reset_date == DAY + timedelta(days=1)
    assert not stats.rollover_if_new_day(DAY + timedelta(days=1))


def test_reset_trade_counters():
    stats = RunningStatistics(today=DAY)
    stats.record_trade_opened()
    stats.record_trade_result(-1.0)

    stats.reset_trade_counters()

    snap = stats.snapshot()
    assert (snap.total_trades, snap.win_trades, snap.lose_trades, snap.total_profit) == (0, 0, 0, 0.0)
    assert snap.daily_trades == 1


def test_snapshot_to_dict():
    data = RunningStatistics(start_balance=100, today=DAY).snapshot().to_dict()

    assert data['last_reset_date'] == '2024-03-01'
    assert data['win_rate'] == 0.0
    assert data['start_balance'] == 100.0
