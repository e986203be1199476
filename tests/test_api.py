"""
Tests for the read-only status API.
"""

import pytest
from fastapi.testclient import TestClient

from execution.position_tracker import TrackedPosition
from interfaces.api import _redact, create_app
from monitoring.logger import get_journal, log_event
from signals.models import Direction


@pytest.fixture
def client(tracker, statistics):
    get_journal().clear()
    tracker.add_open_position(TrackedPosition(
        symbol='BTCUSDT', direction=Direction.LONG, entry_price=50000.0, quantity=0.002, order_id='order-1',
    ))
    statistics.record_signal()
    return TestClient(create_app(tracker, statistics, dry_run=True))


def test_health(client):
    body = client.get("/health").json()

    assert body['ok'] is True
    assert body['dry_run'] is True
    assert body['monitoring'] is False


def test_statistics(client):
    body = client.get("/statistics").json()

    assert body['total_signals'] == 1
    assert body['open_positions'] == 1
    assert body['start_balance'] == 1000.0


def test_positions(client):
    body = client.get("/positions").json()

    assert [p['symbol'] for p in body] == ['BTCUSDT']
    assert body[0]['direction'] == 'LONG'
    assert body[0]['closing'] is False


def test_recent_logs_are_scrubbed(client):
    log_event("config.loaded", {'api_key': 'KEY123', 'symbol': 'BTCUSDT'})

    body = client.get("/logs/recent", params={'limit': 5}).json()

    assert body[0]['event'] == "config.loaded"
    assert 'KEY123' not in str(body)
    assert client.get("/logs/recent", params={'limit': 0}).status_code == 422


def test_writes_are_refused(client):
    assert client.post("/positions").status_code == 405
    assert client.post("/close/BTCUSDT").status_code == 405


def test_redact_nested():
    assert _redact({'a': [{'bot_token': 'x', 'n': 1}], 'Secret': 's'}) == {
        'a': [{'bot_token': '<REDACTED>', 'n': 1}], 'Secret': '<REDACTED>',
    }
