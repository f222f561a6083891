from unittest.mock import MagicMock, patch

import requests

from spotbot.config import NotificationConfig
from spotbot.notifications import InMemoryNotifier, LogNotifier, TelegramNotifier, build_notifier


def _ok(message_id=5):
    resp = MagicMock()
    resp.ok = True
    resp.json.return_value = {"ok": True, "result": {"message_id": message_id}}
    return resp


@patch("spotbot.notifications.requests.Session.post")
def test_telegram_send_uses_html(mock_post):
    mock_post.return_value = _ok(11)
    notifier = TelegramNotifier("TOKEN", "42")

    assert notifier.send("<b>Opened</b>") == 11

    url = mock_post.call_args.args[0]
    payload = mock_post.call_args.kwargs["json"]
    assert url == "https://api.telegram.org/botTOKEN/sendMessage"
    assert payload == {"chat_id": "42", "text": "<b>Opened</b>", "parse_mode": "HTML"}


@patch("spotbot.notifications.requests.Session.post")
def test_telegram_confirmation_keyboard(mock_post):
    mock_post.return_value = _ok()
    notifier = TelegramNotifier("TOKEN", "42")

    notifier.send_confirmation("Close all?", "Yes", "close_all", "No", "cancel")

    keyboard = mock_post.call_args.kwargs["json"]["reply_markup"]["inline_keyboard"]
    assert keyboard == [[
        {"text": "Yes", "callback_data": "close_all"},
        {"text": "No", "callback_data": "cancel"},
    ]]


@patch("spotbot.notifications.requests.Session.post")
def test_telegram_failures_do_not_raise(mock_post):
    notifier = TelegramNotifier("TOKEN", "42")

    mock_post.side_effect = requests.exceptions.ConnectionError("down")
    assert notifier.send("hello") is None

    failed = MagicMock()
    failed.ok = False
    failed.status_code = 400
    failed.text = "Bad Request"
    mock_post.side_effect = None
    mock_post.return_value = failed
    assert notifier.send_with_action("hello", "Close", "close_BTCUSDT") is None
    assert notifier.delete_message(5) is False


@patch("spotbot.notifications.requests.Session.post")
def test_telegram_delete_message(mock_post):
    mock_post.return_value = _ok()
    assert TelegramNotifier("TOKEN", "42").delete_message(5)
    assert mock_post.call_args.kwargs["json"] == {"chat_id": "42", "message_id": 5}


def test_alert_is_prefixed():
    notifier = InMemoryNotifier()
    notifier.alert("no stop")
    assert notifier.texts == ["CRITICAL: no stop"]


def test_in_memory_records_buttons():
    notifier = InMemoryNotifier()
    message_id = notifier.send_with_action("Position open", "Close", "close_BTCUSDT")
    assert notifier.messages[0]["buttons"] == [{"text": "Close", "callback_data": "close_BTCUSDT"}]
    assert notifier.delete_message(message_id)
    assert notifier.deleted == [message_id]


def test_build_notifier_selects_sink():
    assert isinstance(build_notifier(NotificationConfig()), LogNotifier)
    assert isinstance(build_notifier(NotificationConfig(telegram_token="t", telegram_chat_id="1")), TelegramNotifier)
