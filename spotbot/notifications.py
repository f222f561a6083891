"""
Notification sinks.

The core only needs fire-and-forget delivery: a sink never raises into the
trading flow. Delivery failures are logged and the call returns None.

Sinks:
- ``LogNotifier``: loguru only, used when no chat is configured
- ``TelegramNotifier``: Telegram Bot API over ``requests``
- ``InMemoryNotifier``: records messages for tests
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import requests

from .logging_setup import logger


class Notifier(ABC):
    """Push-message sink with optional interactive buttons."""

    @abstractmethod
    def send(self, text: str) -> Optional[int]:
        """Send a message. Returns the message id when the sink has one."""

    @abstractmethod
    def send_with_action(self, text: str, label: str, action_token: str) -> Optional[int]:
        pass

    @abstractmethod
    def send_confirmation(
        self,
        text: str,
        confirm_label: str,
        confirm_token: str,
        cancel_label: str,
        cancel_token: str,
    ) -> Optional[int]:
        pass

    @abstractmethod
    def delete_message(self, message_id: int) -> bool:
        pass

    def alert(self, text: str) -> Optional[int]:
        """Maximum-severity message: always logged at CRITICAL and sent."""
        logger.critical(text)
        return self.send(f"CRITICAL: {text}")


class LogNotifier(Notifier):
    def send(self, text: str) -> Optional[int]:
        logger.info(f"[notify] {text}")
        return None

    def send_with_action(self, text, label, action_token):
        logger.info(f"[notify] {text} [{label} -> {action_token}]")
        return None

    def send_confirmation(self, text, confirm_label, confirm_token, cancel_label, cancel_token):
        logger.info(f"[notify] {text} [{confirm_label} -> {confirm_token} | {cancel_label} -> {cancel_token}]")
        return None

    def delete_message(self, message_id: int) -> bool:
        return False


class InMemoryNotifier(Notifier):
    """Records every message; used by tests."""

    def __init__(self):
        self.messages: List[Dict[str, Any]] = []
        self.deleted: List[int] = []

    def _record(self, text: str, buttons: Optional[List[Dict[str, str]]] = None) -> int:
        self.messages.append({"text": text, "buttons": buttons or []})
        return len(self.messages)

    @property
    def texts(self) -> List[str]:
        return [m["text"] for m in self.messages]

    def send(self, text: str) -> Optional[int]:
        return self._record(text)

    def send_with_action(self, text, label, action_token):
        return self._record(text, [{"text": label, "callback_data": action_token}])

    def send_confirmation(self, text, confirm_label, confirm_token, cancel_label, cancel_token):
        return self._record(
            text,
            [
                {"text": confirm_label, "callback_data": confirm_token},
                {"text": cancel_label, "callback_data": cancel_token},
            ],
        )

    def delete_message(self, message_id: int) -> bool:
        self.deleted.append(message_id)
        return True


class TelegramNotifier(Notifier):
    """Telegram Bot API sink (HTML parse mode, inline keyboards)."""

    def __init__(self, token: str, chat_id: str, *, base_url: str = "https://api.telegram.org", timeout: int = 10):
        self.chat_id = chat_id
        self.timeout = timeout
        self.api_url = f"{base_url.rstrip('/')}/bot{token}"
        self.session = requests.Session()

    def _post(self, method: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            resp = self.session.post(f"{self.api_url}/{method}", json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.warning(f"Telegram {method} failed: {e}")
            return None
        if not resp.ok:
            logger.warning(f"Telegram {method} failed: {resp.status_code}: {resp.text}")
            return None
        try:
            return resp.json()
        except ValueError:
            logger.warning(f"Telegram {method} returned non-JSON body")
            return None

    def _send(self, text: str, keyboard: Optional[List[List[Dict[str, str]]]] = None) -> Optional[int]:
        payload: Dict[str, Any] = {"chat_id": self.chat_id, "text": text, "parse_mode": "HTML"}
        if keyboard:
            payload["reply_markup"] = {"inline_keyboard": keyboard}
        body = self._post("sendMessage", payload)
        if not body or not body.get("ok"):
            return None
        return body.get("result", {}).get("message_id")

    def send(self, text: str) -> Optional[int]:
        return self._send(text)

    def send_with_action(self, text, label, action_token):
        return self._send(text, [[{"text": label, "callback_data": action_token}]])

    def send_confirmation(self, text, confirm_label, confirm_token, cancel_label, cancel_token):
        return self._send(
            text,
            [[
                {"text": confirm_label, "callback_data": confirm_token},
                {"text": cancel_label, "callback_data": cancel_token},
            ]],
        )

    def delete_message(self, message_id: int) -> bool:
        body = self._post("deleteMessage", {"chat_id": self.chat_id, "message_id": message_id})
        return bool(body and body.get("ok"))


def build_notifier(config) -> Notifier:
    """Telegram sink when a token and chat are configured, log-only otherwise."""
    if config.telegram_enabled:
        return TelegramNotifier(config.telegram_token, config.telegram_chat_id)
    return LogNotifier()
