import logging

import requests
from django.conf import settings

logger = logging.getLogger(__name__)


def send_telegram_message(chat_id: int, text: str) -> bool:
    """
    Простая отправка сообщения от имени бота. False, если бот не настроен
    или Telegram недоступен.
    """
    token = getattr(settings, "TELEGRAM_BOT_TOKEN", None)
    if not token or not chat_id:
        return False

    url = f"https://api.telegram.org/bot{token}/sendMessage"
    payload = {
        "chat_id": chat_id,
        "text": text,
        "parse_mode": "HTML",  # чтобы <b>...</b> работало
    }

    try:
        response = requests.post(url, data=payload, timeout=5)
        response.raise_for_status()
    except requests.RequestException:
        logger.exception("Telegram message to %s failed", chat_id)
        return False
    return True
