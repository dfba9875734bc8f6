"""Administrator checks for commands that change a chat's birthday list."""

from __future__ import annotations

import asyncio
import logging

from telegram import Bot
from telegram.constants import ChatMemberStatus
from telegram.error import TelegramError

from birthday_reminder.errors import Forbidden

LOGGER = logging.getLogger(__name__)

ADMIN_STATUSES = {
    ChatMemberStatus.OWNER,
    ChatMemberStatus.ADMINISTRATOR,
}


class PermissionGate:
    def __init__(self, *, bot: Bot, maintainer_user_id: int | None = None, timeout: float = 10.0) -> None:
        self._bot = bot
        self._maintainer_user_id = maintainer_user_id
        self._timeout = timeout

    def is_maintainer(self, user_id: int | None) -> bool:
        return user_id is not None and user_id == self._maintainer_user_id

    async def check(self, chat_id: int, user_id: int | None) -> None:
        """Raise ``Forbidden`` unless the user may change the chat's list.

        The maintainer and the owner of a private dialog always pass. Anyone
        else must be an owner or administrator of the chat. A failed or slow
        lookup counts as a refusal.
        """
        if user_id is None:
            raise Forbidden("Anonymous senders cannot manage birthdays")

        if self.is_maintainer(user_id):
            return

        # A private chat with the bot has the same id as the user.
        if chat_id == user_id:
            return

        try:
            member = await asyncio.wait_for(
                self._bot.get_chat_member(chat_id=chat_id, user_id=user_id),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            LOGGER.warning("Admin lookup for user %s in chat %s timed out", user_id, chat_id)
            raise Forbidden("Could not verify administrator rights") from exc
        except TelegramError as exc:
            LOGGER.warning("Admin lookup for user %s in chat %s failed: %s", user_id, chat_id, exc)
            raise Forbidden("Could not verify administrator rights") from exc

        if member.status not in ADMIN_STATUSES:
            raise Forbidden("Only chat administrators can manage birthdays")

    async def is_allowed(self, chat_id: int, user_id: int | None) -> bool:
        try:
            await self.check(chat_id, user_id)
        except Forbidden:
            return False
        return True
