"""
Messaging-platform control API (Telegram).

Thin wrapper over python-telegram-bot's ``telegram.Bot`` so the rest of the
code deals in plain values and our own error types. A ``Bot`` object is
opened per call because every call may use a different bot token.

Note: in python-telegram-bot ``BadRequest`` subclasses ``NetworkError``, so
it must be caught first; it means Telegram answered and said no.
"""

import logging
from typing import Any, Dict, Optional, Sequence

from telegram import Bot as TelegramBot
from telegram.constants import ParseMode
from telegram.error import BadRequest, NetworkError, TelegramError

from botfleet.errors import ExternalUnavailable

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_UPDATES = ("message", "callback_query")


class TelegramControl:
    """set / delete / query webhook registration and send replies."""

    async def set_webhook(
        self,
        token: str,
        url: str,
        allowed_updates: Sequence[str] = DEFAULT_ALLOWED_UPDATES,
    ) -> bool:
        try:
            async with TelegramBot(token) as bot:
                ok = await bot.set_webhook(url=url, allowed_updates=list(allowed_updates))
        except BadRequest as exc:
            logger.warning("Telegram rejected webhook %s: %s", url, exc)
            return False
        except NetworkError as exc:
            raise ExternalUnavailable(f"Telegram unreachable while setting webhook: {exc}") from exc
        except TelegramError as exc:
            logger.warning("Telegram rejected webhook %s: %s", url, exc)
            return False
        if ok:
            logger.info("Telegram webhook configured: %s", url)
        return bool(ok)

    async def delete_webhook(self, token: str) -> bool:
        try:
            async with TelegramBot(token) as bot:
                return bool(await bot.delete_webhook())
        except BadRequest as exc:
            logger.warning("Telegram refused webhook deletion: %s", exc)
            return False
        except NetworkError as exc:
            raise ExternalUnavailable(f"Telegram unreachable while deleting webhook: {exc}") from exc
        except TelegramError as exc:
            logger.warning("Telegram refused webhook deletion: %s", exc)
            return False

    async def get_webhook_info(self, token: str) -> Dict[str, Any]:
        try:
            async with TelegramBot(token) as bot:
                info = await bot.get_webhook_info()
        except BadRequest as exc:
            logger.warning("Telegram refused webhook info request: %s", exc)
            return {}
        except NetworkError as exc:
            raise ExternalUnavailable(f"Telegram unreachable: {exc}") from exc
        return info.to_dict()

    async def send_message(self, token: str, chat_id: int, text: str) -> None:
        try:
            async with TelegramBot(token) as bot:
                try:
                    await bot.send_message(chat_id=chat_id, text=text, parse_mode=ParseMode.MARKDOWN)
                except BadRequest:
                    # Unbalanced markdown in model output; resend as plain text
                    await bot.send_message(chat_id=chat_id, text=text)
        except BadRequest as exc:
            logger.warning("Telegram refused message to chat %s: %s", chat_id, exc)
        except NetworkError as exc:
            raise ExternalUnavailable(f"Telegram unreachable while sending: {exc}") from exc


_control: Optional[TelegramControl] = None


def get_telegram_control() -> TelegramControl:
    global _control
    if _control is None:
        _control = TelegramControl()
    return _control
