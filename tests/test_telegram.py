"""
Tests for the Telegram channel transport, with the Bot API faked at the HTTP session.
"""

import pytest

from interfaces import telegram
from interfaces.telegram import TelegramError, TelegramTransport
from signals.models import CloseSignal, OpenSignal


CHANNEL = "-100123"

OPEN_TEXT = "SPREAD SIGNAL\nSYMBOL: BTCUSDT\nDIRECTION: LONG\nLAST_PRICE: 50000\nTIME: 2024-03-01T12:30:00Z"
CLOSE_TEXT = "SPREAD CLOSED\nSYMBOL: BTCUSDT\nDIRECTION: LONG\nTIME: 2024-03-01T13:30:00Z"


class FakeResponse:

    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    async def json(self):
        return self.payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """Answers Bot API calls from a queue of canned payloads."""

    def __init__(self, *payloads):
        self.payloads = list(payloads)
        self.calls = []
        self.closed = False

    def post(self, url, json=None):
        self.calls.append((url.rsplit("/", 1)[-1], json))
        return FakeResponse(self.payloads.pop(0))

    async def close(self):
        self.closed = True


def post(text, chat_id=CHANNEL, update_id=1, field="text"):
    return {'update_id': update_id, 'channel_post': {'message_id': update_id, 'chat': {'id': int(chat_id)}, field: text}}


@pytest.fixture
def received():
    return []


@pytest.fixture
def make_transport(received):
    def _make(*payloads):
        session = FakeSession(*payloads)
        transport = TelegramTransport("123:ABC", CHANNEL, poll_timeout=1, session=session)

        async def handler(signal):
            received.append(signal)

        transport.on_signal(handler)
        return transport, session
    return _make


@pytest.mark.asyncio
async def test_channel_post_dispatched(make_transport, received):
    transport, _ = make_transport()

    signal = await transport.dispatch_update(post(OPEN_TEXT))

    assert isinstance(signal, OpenSignal)
    assert received == [signal]


@pytest.mark.asyncio
async def test_caption_is_parsed(make_transport, received):
    transport, _ = make_transport()

    signal = await transport.dispatch_update(post(CLOSE_TEXT, field="caption"))

    assert isinstance(signal, CloseSignal)


@pytest.mark.asyncio
async def test_other_chats_and_noise_ignored(make_transport, received):
    transport, _ = make_transport()

    assert await transport.dispatch_update(post(OPEN_TEXT, chat_id="-100999")) is None
    assert await transport.dispatch_update(post("gm everyone")) is None
    assert await transport.dispatch_update({'update_id': 3, 'message': {'text': OPEN_TEXT}}) is None
    assert received == []


@pytest.mark.asyncio
async def test_chatter_never_reaches_the_parser(make_transport, received, monkeypatch):
    transport, _ = make_transport()
    parse = telegram.parse_signal_detailed
    parsed = []

    def counting_parse(text):
        parsed.append(text)
        return parse(text)

    monkeypatch.setattr(telegram, "parse_signal_detailed", counting_parse)

    assert await transport.dispatch_update(post("gm everyone")) is None
    assert parsed == []

    assert isinstance(await transport.dispatch_update(post(OPEN_TEXT, update_id=2)), OpenSignal)
    assert parsed == [OPEN_TEXT]


@pytest.mark.asyncio
async def test_poll_advances_offset_in_order(make_transport, received):
    transport, session = make_transport(
        {'ok': True, 'result': [post(OPEN_TEXT, update_id=10), post(CLOSE_TEXT, update_id=11)]},
        {'ok': True, 'result': []},
    )

    assert await transport.poll_once() == 2
    assert await transport.poll_once() == 0

    assert [type(s) for s in received] == [OpenSignal, CloseSignal]
    first, second = session.calls
    assert first[0] == "getUpdates"
    assert first[1]['offset'] is None
    assert first[1]['allowed_updates'] == ["channel_post"]
    assert second[1]['offset'] == 12


@pytest.mark.asyncio
async def test_send_message_uses_html(make_transport):
    transport, session = make_transport({'ok': True, 'result': {'message_id': 5}})

    await transport.send_message(CHANNEL, "<b>hi</b>")

    method, params = session.calls[0]
    assert method == "sendMessage"
    assert params['chat_id'] == CHANNEL
    assert params['parse_mode'] == "HTML"


@pytest.mark.asyncio
async def test_api_error_raises(make_transport):
    transport, _ = make_transport({'ok': False, 'description': 'Bad Request: chat not found'})

    with pytest.raises(TelegramError, match="chat not found"):
        await transport.send_message(CHANNEL, "hi")


@pytest.mark.asyncio
async def test_start_and_stop_keep_injected_session(make_transport):
    transport, session = make_transport(
        {'ok': True, 'result': {'username': 'spread_bot'}},
        {'ok': True, 'result': []},
    )

    await transport.start()
    await transport.stop()

    assert session.calls[0][0] == "getMe"
    assert not session.closed


def test_token_required():
    with pytest.raises(ValueError):
        TelegramTransport("", CHANNEL)
