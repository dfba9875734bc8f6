from __future__ import annotations

from dataclasses import dataclass


def normalize_name(name: str) -> str:
    pieces = name.strip().casefold().split()
    return " ".join(pieces)


@dataclass(frozen=True)
class BirthdayEntry:
    name: str
    month: int
    day: int
    username: str | None = None

    @property
    def identity(self) -> tuple[str, int, int]:
        return normalize_name(self.name), self.month, self.day

    @property
    def date_text(self) -> str:
        return f"{self.day:02d}-{self.month:02d}"


@dataclass(frozen=True)
class ChatRecord:
    chat_id: int
    birthdays: tuple[BirthdayEntry, ...] = ()
    notifications_enabled: bool = True


@dataclass(frozen=True)
class RegistryStats:
    chats: int
    active_chats: int
    birthdays: int


@dataclass(frozen=True)
class NotificationEvent:
    chat_id: int
    names: tuple[str, ...]
    entries: tuple[BirthdayEntry, ...]
