import logging

from aiogram import Router
from aiogram.filters import CommandObject, CommandStart
from aiogram.types import Message

from booking_scheduler.services.notifications import TelegramNotifier

router = Router()
logger = logging.getLogger(__name__)


@router.message(CommandStart())
async def handle_start(message: Message, command: CommandObject, notifier: TelegramNotifier) -> None:
    """``/start <user id>`` links the chat to a client or provider id for notifications."""
    recipient_id = (command.args or "").strip()
    if not recipient_id:
        await message.answer("Send /start <your user id> to receive booking notifications here.")
        return
    notifier.remember_chat(recipient_id, message.chat.id)
    logger.info("start: linked recipient=%s chat=%s", recipient_id, message.chat.id)
    await message.answer("Booking notifications are on for this chat.")
