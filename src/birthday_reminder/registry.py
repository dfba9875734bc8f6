from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator
from dataclasses import replace
from typing import Any

from birthday_reminder.date_logic import validate_month_day
from birthday_reminder.errors import AmbiguousEntry, DuplicateEntry, NotFound, RegistryFull
from birthday_reminder.models import BirthdayEntry, ChatRecord, RegistryStats, normalize_name

LOGGER = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


def clean_entry(entry: BirthdayEntry) -> BirthdayEntry:
    name = " ".join(entry.name.split())
    if not name:
        raise ValueError("birthday name must not be empty")

    validate_month_day(entry.month, entry.day)

    username = (entry.username or "").strip().lstrip("@") or None
    return BirthdayEntry(name=name, month=entry.month, day=entry.day, username=username)


class ActiveChats:
    """Iterable over the enabled chats.

    Every iteration takes a fresh point-in-time copy of the registry, so the
    object can be iterated more than once and never sees half-applied writes.
    """

    def __init__(self, registry: BirthdayRegistry) -> None:
        self._registry = registry

    def __iter__(self) -> Iterator[ChatRecord]:
        for record in self._registry.records():
            if record.notifications_enabled:
                yield record


class BirthdayRegistry:
    """In-memory birthday lists keyed by chat id.

    Records are immutable; a mutation builds a new ``ChatRecord`` and swaps it
    in under the lock.
    """

    def __init__(self, *, max_birthdays: int | None = None) -> None:
        self._chats: dict[int, ChatRecord] = {}
        self._lock = threading.RLock()
        self._max_birthdays = max_birthdays

    def get(self, chat_id: int) -> ChatRecord | None:
        with self._lock:
            return self._chats.get(chat_id)

    def upsert_chat(self, chat_id: int) -> ChatRecord:
        with self._lock:
            record = self._chats.get(chat_id)
            if record is None:
                record = ChatRecord(chat_id=chat_id)
                self._chats[chat_id] = record
                LOGGER.info("Registered chat %s", chat_id)
            return record

    def add_entry(self, chat_id: int, entry: BirthdayEntry) -> ChatRecord:
        return self.add_entries(chat_id, [entry])

    def add_entries(self, chat_id: int, entries: Iterable[BirthdayEntry]) -> ChatRecord:
        cleaned = [clean_entry(entry) for entry in entries]

        with self._lock:
            record = self._chats.get(chat_id) or ChatRecord(chat_id=chat_id)
            seen = {existing.identity for existing in record.birthdays}
            for entry in cleaned:
                if entry.identity in seen:
                    raise DuplicateEntry(entry.name, entry.month, entry.day)
                seen.add(entry.identity)

            if self._max_birthdays is not None:
                total = self._count_birthdays() + len(cleaned)
                if total > self._max_birthdays:
                    raise RegistryFull(
                        f"Birthday limit of {self._max_birthdays} reached"
                    )

            updated = replace(record, birthdays=(*record.birthdays, *cleaned))
            self._chats[chat_id] = updated

        LOGGER.info("Added %s birthday(s) to chat %s", len(cleaned), chat_id)
        return updated

    def remove_entry(self, chat_id: int, name_or_index: str | int) -> BirthdayEntry:
        """Remove one entry by its 1-based list position or by name.

        A name that matches several entries is refused with ``AmbiguousEntry``
        so that the caller can ask for the position instead.
        """
        with self._lock:
            record = self._chats.get(chat_id)
            birthdays = record.birthdays if record is not None else ()
            position = self._resolve_position(birthdays, name_or_index)

            removed = birthdays[position]
            updated = replace(
                record,
                birthdays=birthdays[:position] + birthdays[position + 1 :],
            )
            self._chats[chat_id] = updated

        LOGGER.info("Removed birthday #%s from chat %s", position + 1, chat_id)
        return removed

    @staticmethod
    def _resolve_position(birthdays: tuple[BirthdayEntry, ...], name_or_index: str | int) -> int:
        if isinstance(name_or_index, int):
            index = name_or_index
        elif name_or_index.strip().isdecimal():
            index = int(name_or_index.strip())
        else:
            target = normalize_name(name_or_index)
            matches = [
                position
                for position, entry in enumerate(birthdays)
                if normalize_name(entry.name) == target
            ]
            if not matches:
                raise NotFound(f"No birthday named {name_or_index.strip()!r}")
            if len(matches) > 1:
                raise AmbiguousEntry(name_or_index.strip(), [position + 1 for position in matches])
            return matches[0]

        if index < 1 or index > len(birthdays):
            raise NotFound(f"No birthday with number {index}")
        return index - 1

    def set_enabled(self, chat_id: int, enabled: bool) -> bool:
        with self._lock:
            existing = self._chats.get(chat_id)
            previous = existing.notifications_enabled if existing is not None else False
            record = existing or ChatRecord(chat_id=chat_id)
            self._chats[chat_id] = replace(record, notifications_enabled=enabled)

        LOGGER.info("Notifications %s for chat %s", "enabled" if enabled else "disabled", chat_id)
        return previous

    def list(self, chat_id: int) -> tuple[BirthdayEntry, ...]:
        with self._lock:
            record = self._chats.get(chat_id)
            return record.birthdays if record is not None else ()

    def clear_chat(self, chat_id: int) -> bool:
        with self._lock:
            removed = self._chats.pop(chat_id, None)
        if removed is not None:
            LOGGER.info("Cleared chat %s", chat_id)
        return removed is not None

    def all_active_chats(self) -> ActiveChats:
        return ActiveChats(self)

    def records(self) -> list[ChatRecord]:
        with self._lock:
            return list(self._chats.values())

    def stats(self) -> RegistryStats:
        with self._lock:
            return RegistryStats(
                chats=len(self._chats),
                active_chats=sum(1 for record in self._chats.values() if record.notifications_enabled),
                birthdays=self._count_birthdays(),
            )

    def _count_birthdays(self) -> int:
        return sum(len(record.birthdays) for record in self._chats.values())

    def to_snapshot(self) -> dict[str, Any]:
        with self._lock:
            records = list(self._chats.values())

        chats: dict[str, Any] = {}
        for record in records:
            chats[str(record.chat_id)] = {
                "notifications_enabled": record.notifications_enabled,
                "birthdays": [
                    {
                        "name": entry.name,
                        "month": entry.month,
                        "day": entry.day,
                        "username": entry.username,
                    }
                    for entry in record.birthdays
                ],
            }
        return {"version": SNAPSHOT_VERSION, "chats": chats}

    @classmethod
    def from_snapshot(cls, data: dict[str, Any], *, max_birthdays: int | None = None) -> BirthdayRegistry:
        if not isinstance(data, dict) or not isinstance(data.get("chats"), dict):
            raise ValueError("snapshot must contain a 'chats' mapping")

        registry = cls(max_birthdays=max_birthdays)
        for raw_chat_id, raw_record in data["chats"].items():
            chat_id = int(raw_chat_id)
            entries = [
                clean_entry(
                    BirthdayEntry(
                        name=str(row["name"]),
                        month=int(row["month"]),
                        day=int(row["day"]),
                        username=row.get("username"),
                    )
                )
                for row in raw_record.get("birthdays", [])
            ]
            registry._chats[chat_id] = ChatRecord(
                chat_id=chat_id,
                birthdays=tuple(entries),
                notifications_enabled=bool(raw_record.get("notifications_enabled", True)),
            )
        return registry
