from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from telegram.constants import ChatMemberStatus
from telegram.error import TelegramError


@dataclass
class FakeMember:
    status: ChatMemberStatus


@dataclass
class FakeBot:
    statuses: dict[tuple[int, int], ChatMemberStatus] = field(default_factory=dict)
    sent_messages: list[tuple[int, str]] = field(default_factory=list)
    failing_chats: set[int] = field(default_factory=set)
    member_lookups: int = 0
    lookup_delay: float = 0.0
    lookup_error: bool = False

    async def send_message(self, chat_id: int, text: str) -> None:
        if chat_id in self.failing_chats:
            raise TelegramError("Forbidden: bot was kicked from the group chat")
        self.sent_messages.append((chat_id, text))

    async def get_chat_member(self, chat_id: int, user_id: int) -> FakeMember:
        self.member_lookups += 1
        if self.lookup_delay:
            await asyncio.sleep(self.lookup_delay)
        if self.lookup_error:
            raise TelegramError("Bad Request: chat not found")
        return FakeMember(status=self.statuses.get((chat_id, user_id), ChatMemberStatus.MEMBER))
