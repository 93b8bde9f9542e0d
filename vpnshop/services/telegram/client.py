"""
Telegram client wrapper using httpx sync client.
Used from the payment core, HTTP routes and Celery workers (no event loop).
"""
import logging

import httpx

from vpnshop.core.config import settings
from vpnshop.utils.metrics import telegram_requests_total


logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"


class TelegramAPIError(Exception):
    def __init__(self, method: str, error_code: int, description: str):
        self.method = method
        self.error_code = error_code
        self.description = description
        super().__init__(f"{method} -> {error_code}: {description}")


class TelegramClient:
    def __init__(self, http_client: httpx.Client | None = None) -> None:
        self._token = settings.telegram_bot_token
        self._base_url = f"{TELEGRAM_API_BASE}/bot{self._token}"
        self._client = http_client

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            self._client = httpx.Client(timeout=settings.http_client_timeout)
        return self._client

    def _api_call(self, method: str, data: dict) -> dict:
        try:
            resp = self.client.post(f"{self._base_url}/{method}", json=data)
            result = resp.json()
        except (httpx.HTTPError, ValueError):
            telegram_requests_total.labels(method=method, status="error").inc()
            raise
        if not result.get("ok"):
            telegram_requests_total.labels(method=method, status="error").inc()
            raise TelegramAPIError(method, result.get("error_code", 0), result.get("description", "Unknown error"))
        telegram_requests_total.labels(method=method, status="success").inc()
        return result

    def send_message(
        self,
        chat_id: str,
        text: str,
        reply_markup: dict | None = None,
        parse_mode: str | None = None,
    ) -> dict:
        """Send text message to chat."""
        data = {"chat_id": int(chat_id), "text": text, "disable_web_page_preview": True}
        if reply_markup:
            data["reply_markup"] = reply_markup
        if parse_mode:
            data["parse_mode"] = parse_mode
        return self._api_call("sendMessage", data)

    def send_photo(
        self,
        chat_id: str,
        photo_file_id: str,
        caption: str | None = None,
        reply_markup: dict | None = None,
    ) -> dict:
        """Send an already uploaded photo by file_id."""
        data = {"chat_id": int(chat_id), "photo": photo_file_id}
        if caption:
            data["caption"] = caption
        if reply_markup:
            data["reply_markup"] = reply_markup
        return self._api_call("sendPhoto", data)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
