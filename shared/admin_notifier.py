"""
Утилита для отправки уведомлений админам
"""
import logging
from typing import Optional

from telegram import Bot
from telegram.constants import ParseMode

from shared.config import ADMIN_IDS, TELEGRAM_BOT_TOKEN

logger = logging.getLogger(__name__)

_bot: Optional[Bot] = None


def get_bot() -> Optional[Bot]:
    """Бот для уведомлений (None, если токен не задан)"""
    global _bot

    if _bot is None and TELEGRAM_BOT_TOKEN:
        _bot = Bot(token=TELEGRAM_BOT_TOKEN)
    return _bot


async def telegram_send(chat_id: int, text: str):
    """send_func по умолчанию: сообщение через Telegram Bot API"""
    bot = get_bot()
    if bot is None:
        raise RuntimeError("TELEGRAM_BOT_TOKEN is not configured")
    await bot.send_message(chat_id=chat_id, text=text, parse_mode=ParseMode.MARKDOWN)


async def notify_admin(message: str, level: str = "error", send_func=None, admin_ids=None):
    """
    Отправить уведомление всем админам

    Args:
        message: Текст уведомления
        level: Уровень (info, warning, error, critical)
        send_func: Функция для отправки сообщения (async callable)
    """
    admin_ids = ADMIN_IDS if admin_ids is None else admin_ids
    if not admin_ids:
        logger.warning("ADMIN_IDS is empty, cannot send notification")
        return

    if send_func is None:
        logger.warning("send_func not provided, cannot send notification")
        return

    emoji = {
        "info": "ℹ️",
        "warning": "⚠️",
        "error": "🚨",
        "critical": "🔴",
        "success": "✅"
    }.get(level.lower(), "📝")

    formatted_message = f"{emoji} *{level.upper()}*\n\n{message}"

    success_count = 0
    failed_count = 0

    for admin_id in admin_ids:
        try:
            await send_func(admin_id, formatted_message)
            success_count += 1
        except Exception as e:
            failed_count += 1
            logger.error(f"Failed to notify admin {admin_id}: {e}")

    logger.info(f"Admin notification sent: {success_count} success, {failed_count} failed")


async def notify_admin_critical(error_message: str, send_func=None):
    """
    Критичное уведомление (разрыв партиций, аварийная остановка цикла)
    """
    message = f"*Reward engine critical error:*\n\n{error_message}\n\n⚠️ Требуется немедленное вмешательство!"
    await notify_admin(message, level="critical", send_func=send_func)


async def notify_partition_failure(failed: list, send_func=None):
    """
    Не удалось создать партиции журнала
    """
    lines = "\n".join(f"• {item['name']}: {item['error']}" for item in failed)
    await notify_admin(f"*Partition maintenance failed:*\n\n{lines}", level="error", send_func=send_func)
