from __future__ import annotations

import asyncio
import hashlib
import logging
from datetime import date, datetime, time, timezone
from pathlib import Path

from telegram import Bot
from telegram.error import TelegramError

from birthday_reminder.date_logic import occurs_on
from birthday_reminder.errors import PersistenceFailure
from birthday_reminder.models import BirthdayEntry, NotificationEvent
from birthday_reminder.notification_state import NotificationState, load_state, save_state_atomic
from birthday_reminder.registry import BirthdayRegistry

LOGGER = logging.getLogger(__name__)

NOTIFICATION_JOB_NAME = "daily-birthday-notifications"
NOTIFICATION_TIME = time(hour=7, minute=0, tzinfo=timezone.utc)

HEALTH_CHECK_JOB_NAME = "daily-health-check"
HEALTH_CHECK_TIME = time(hour=7, minute=10, tzinfo=timezone.utc)

SINGLE_TEMPLATES = (
    "🎉 Today is {names}'s birthday! Don't forget to congratulate them.",
    "🥳 Today we celebrate {names}.\nGo make it count.",
    "🎂 It's {names} Day™. Cake is appropriate.",
    "🎈 {names} leveled up today. Send your congratulations!",
    "📢 Public service announcement:\n{names} was born on this day.",
    "🌟 Today's featured human: {names}. Happy birthday!",
)

GROUP_TEMPLATES = (
    "🎉 Birthdays today: {names}! Don't forget to congratulate them.",
    "🥳 Double the cake: today we celebrate {names}.",
    "📢 Public service announcement:\n{names} were all born on this day.",
    "🎊 The calendar has spoken - happy birthday to {names}!",
)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def format_person(entry: BirthdayEntry) -> str:
    if entry.username:
        return f"{entry.name} (@{entry.username})"
    return entry.name


def _join_names(people: list[str]) -> str:
    if len(people) == 1:
        return people[0]
    return ", ".join(people[:-1]) + f" and {people[-1]}"


async def report_to_maintainer(bot: Bot, maintainer_user_id: int | None, text: str) -> None:
    if maintainer_user_id is None:
        return
    try:
        await bot.send_message(chat_id=maintainer_user_id, text=text)
    except TelegramError:
        LOGGER.exception("Could not report to maintainer %s", maintainer_user_id)


class NotificationService:
    """Daily birthday sweep over every active chat.

    The last day that was swept is kept in a small state file so a restart
    never announces the same day twice.
    """

    def __init__(
        self,
        *,
        bot: Bot,
        registry: BirthdayRegistry,
        state_path: Path,
        maintainer_user_id: int | None = None,
    ) -> None:
        self._bot = bot
        self._registry = registry
        self._state_path = state_path
        self._maintainer_user_id = maintainer_user_id
        self._dispatch_lock = asyncio.Lock()
        self._fired_in_memory: date | None = None

    def already_fired(self, today: date) -> bool:
        if self._fired_in_memory == today:
            return True
        return load_state(self._state_path).last_fired == today

    def due_notifications(self, today: date) -> list[NotificationEvent]:
        events: list[NotificationEvent] = []
        for record in self._registry.all_active_chats():
            matching = tuple(entry for entry in record.birthdays if occurs_on(entry, today))
            if not matching:
                continue
            events.append(
                NotificationEvent(
                    chat_id=record.chat_id,
                    names=tuple(entry.name for entry in matching),
                    entries=matching,
                )
            )
        return events

    async def dispatch_for_date(self, today: date) -> int:
        async with self._dispatch_lock:
            return await self._dispatch(today)

    async def _dispatch(self, today: date) -> int:
        if self.already_fired(today):
            LOGGER.info("Notifications for %s were already sent", today.isoformat())
            return 0

        events = self.due_notifications(today)
        sent_count = 0
        failed: list[int] = []
        for event in events:
            try:
                await self._bot.send_message(chat_id=event.chat_id, text=self.format_message(event, today))
            except TelegramError:
                LOGGER.exception("Could not notify chat %s", event.chat_id)
                failed.append(event.chat_id)
                continue
            sent_count += 1

        self._fired_in_memory = today
        try:
            await asyncio.to_thread(save_state_atomic, self._state_path, NotificationState(last_fired=today))
        except PersistenceFailure as exc:
            LOGGER.error("Could not record the sweep for %s: %s", today.isoformat(), exc)
            await report_to_maintainer(self._bot, self._maintainer_user_id, f"Notification state not saved: {exc}")

        LOGGER.info(
            "Sent birthday notifications to %s of %s chat(s) for %s",
            sent_count,
            len(events),
            today.isoformat(),
        )

        if failed:
            await report_to_maintainer(
                self._bot,
                self._maintainer_user_id,
                f"Birthday notifications for {today.isoformat()} failed in chats: "
                + ", ".join(str(chat_id) for chat_id in failed),
            )
        return sent_count

    @staticmethod
    def format_message(event: NotificationEvent, today: date) -> str:
        people = [format_person(entry) for entry in event.entries]
        templates = SINGLE_TEMPLATES if len(people) == 1 else GROUP_TEMPLATES
        template = NotificationService._select_rotating_template(event.chat_id, today, templates)
        return template.format(names=_join_names(people))

    @staticmethod
    def _select_rotating_template(chat_id: int, today: date, templates: tuple[str, ...]) -> str:
        seed = f"{chat_id}|{today.isoformat()}"
        digest = hashlib.sha256(seed.encode("utf-8")).digest()
        index = int.from_bytes(digest[:4], "big") % len(templates)
        return templates[index]
