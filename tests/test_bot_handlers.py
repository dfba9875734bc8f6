from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

import pytest
from telegram.constants import ChatMemberStatus, ChatType

from birthday_reminder import main
from birthday_reminder.backup_service import BACKUP_JOB_NAME, BackupService
from birthday_reminder.bot_handlers import (
    HandlerDependencies,
    _render_chat_stats,
    _render_help,
    _render_list_message,
    active_command,
    actor_id,
    add_command,
    addmany_command,
    backup_command,
    build_handlers,
    cancel_command,
    checkcontrol_command,
    disable_command,
    document_message,
    export_command,
    file_command,
    help_command,
    list_command,
    remove_command,
    stats_command,
    status_command,
    text_message,
)
from birthday_reminder.command_modes import CommandMode, ModeTracker
from birthday_reminder.exchange import import_document
from birthday_reminder.models import BirthdayEntry, ChatRecord
from birthday_reminder.notification_service import NOTIFICATION_JOB_NAME, NotificationService
from birthday_reminder.notification_state import NotificationState, save_state_atomic
from birthday_reminder.permissions import PermissionGate
from birthday_reminder.registry import BirthdayRegistry
from birthday_reminder.settings import Settings
from birthday_reminder.snapshot_store import load_registry
from fakes import FakeBot

GROUP_ID = -1001
ADMIN_ID = 7
OTHER_ADMIN_ID = 8


@dataclass
class FakeUser:
    id: int


@dataclass
class FakeChat:
    id: int
    type: str = ChatType.SUPERGROUP


@dataclass
class FakeFile:
    content: bytes

    async def download_as_bytearray(self) -> bytearray:
        return bytearray(self.content)


@dataclass
class FakeDocument:
    content: bytes
    file_size: int | None = None
    downloads: int = 0

    async def get_file(self) -> FakeFile:
        self.downloads += 1
        return FakeFile(self.content)


@dataclass
class FakeMessage:
    outbox: list[Any]
    text: str | None = None
    document: FakeDocument | None = None
    sender_chat: FakeChat | None = None

    async def reply_text(self, text: str) -> None:
        self.outbox.append(text)

    async def reply_document(self, document: bytes, filename: str) -> None:
        self.outbox.append((filename, document))


@dataclass
class FakeUpdate:
    effective_user: FakeUser | None
    effective_chat: FakeChat
    effective_message: FakeMessage


@dataclass
class FakeApplication:
    bot_data: dict[str, Any]


@dataclass
class FakeJob:
    enabled: bool = True


@dataclass
class FakeJobQueue:
    names: tuple[str, ...] = ()

    def get_jobs_by_name(self, name: str) -> tuple[FakeJob, ...]:
        return (FakeJob(),) if name in self.names else ()


@dataclass
class FakeContext:
    application: FakeApplication
    job_queue: Any = None


@dataclass
class Harness:
    tmp_path: Path
    bot: FakeBot = field(default_factory=FakeBot)
    registry: BirthdayRegistry = field(default_factory=BirthdayRegistry)
    modes: ModeTracker = field(default_factory=ModeTracker)
    outbox: list[Any] = field(default_factory=list)
    maintainer_user_id: int | None = None
    notify_catch_up: bool = False
    job_queue: Any = None

    def __post_init__(self) -> None:
        settings = Settings(
            telegram_bot_token="token",
            snapshot_path=self.tmp_path / "backup.json",
            notification_state_path=self.tmp_path / "notification_state.json",
            maintainer_user_id=self.maintainer_user_id,
            notify_catch_up=self.notify_catch_up,
        )
        deps = HandlerDependencies(
            settings=settings,
            registry=self.registry,
            modes=self.modes,
            gate=PermissionGate(bot=self.bot, maintainer_user_id=self.maintainer_user_id),
            notifications=NotificationService(
                bot=self.bot,
                registry=self.registry,
                state_path=settings.notification_state_path,
            ),
            backup=BackupService(bot=self.bot, registry=self.registry, snapshot_path=settings.snapshot_path),
        )
        self.application = FakeApplication(bot_data={"handler_deps": deps})
        self.context = FakeContext(application=self.application, job_queue=self.job_queue)

    def promote(self, user_id: int = ADMIN_ID) -> None:
        self.bot.statuses[(GROUP_ID, user_id)] = ChatMemberStatus.ADMINISTRATOR

    def demote(self, user_id: int = ADMIN_ID) -> None:
        self.bot.statuses[(GROUP_ID, user_id)] = ChatMemberStatus.MEMBER

    def update(self, *, user_id: int = ADMIN_ID, text: str | None = None, document: FakeDocument | None = None) -> FakeUpdate:
        return FakeUpdate(
            effective_user=FakeUser(id=user_id),
            effective_chat=FakeChat(id=GROUP_ID),
            effective_message=FakeMessage(outbox=self.outbox, text=text, document=document),
        )

    def send(self, handler, **kwargs) -> None:
        asyncio.run(handler(self.update(**kwargs), self.context))

    def mode(self, user_id: int = ADMIN_ID) -> CommandMode:
        return self.modes.current(GROUP_ID, user_id)

    def last_reply(self) -> Any:
        return self.outbox[-1]


def _document(rows: list[dict[str, str]]) -> FakeDocument:
    return FakeDocument(content=json.dumps({"birthdays": rows}).encode("utf-8"))


def test_render_list_message() -> None:
    message = _render_list_message(
        (
            BirthdayEntry(name="Alice Smith", month=3, day=15, username="alice"),
            BirthdayEntry(name="Bob", month=11, day=2),
        )
    )

    assert message == (
        "Tracked birthdays (2):\n"
        "1. Alice Smith (@alice) - 15-03\n"
        "2. Bob - 02-11"
    )


def test_render_help_sections() -> None:
    basic = _render_help(can_manage=False, is_maintainer=False)
    admin = _render_help(can_manage=True, is_maintainer=False)
    maintainer = _render_help(can_manage=True, is_maintainer=True)

    assert "/addmany" not in basic
    assert "/addmany" in admin and "/backup" not in admin
    assert "/backup" in maintainer


def test_render_chat_stats() -> None:
    record = ChatRecord(
        chat_id=GROUP_ID,
        birthdays=(
            BirthdayEntry(name="Alice", month=3, day=15),
            BirthdayEntry(name="Bob", month=3, day=20),
        ),
        notifications_enabled=False,
    )

    text = _render_chat_stats(record, date(2026, 3, 10))

    assert "Birthdays tracked: 2" in text
    assert "off" in text
    assert "Next birthday: Alice in 5d (2026-03-15)" in text
    assert "/active" in _render_chat_stats(None, date(2026, 3, 10))


def test_actor_id_uses_chat_for_anonymous_admins() -> None:
    chat = FakeChat(id=GROUP_ID)
    update = FakeUpdate(
        effective_user=FakeUser(id=1087968824),
        effective_chat=chat,
        effective_message=FakeMessage(outbox=[], sender_chat=chat),
    )

    assert actor_id(update) == GROUP_ID


def test_maintainer_commands_only_with_maintainer(tmp_path: Path) -> None:
    without = Settings(
        telegram_bot_token="token",
        snapshot_path=tmp_path / "backup.json",
        notification_state_path=tmp_path / "state.json",
    )
    with_maintainer = Settings(
        telegram_bot_token="token",
        snapshot_path=tmp_path / "backup.json",
        notification_state_path=tmp_path / "state.json",
        maintainer_user_id=1,
    )

    assert len(build_handlers(with_maintainer)) == len(build_handlers(without)) + 2


def test_add_one_birthday(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.promote()

    harness.send(add_command)
    assert harness.mode() is CommandMode.ADDING_ONE

    harness.send(text_message, text="Alice Smith, 15-03, @alice")

    assert harness.registry.list(GROUP_ID) == (
        BirthdayEntry(name="Alice Smith", month=3, day=15, username="alice"),
    )
    assert harness.mode() is CommandMode.NONE
    assert "added" in harness.last_reply()


def test_bad_format_keeps_add_mode(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.promote()
    harness.send(add_command)

    harness.send(text_message, text="Alice on the fifteenth")

    assert harness.mode() is CommandMode.ADDING_ONE
    assert harness.registry.list(GROUP_ID) == ()


def test_duplicate_add_is_reported_and_resets(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.promote()
    harness.registry.add_entry(GROUP_ID, BirthdayEntry(name="Alice", month=3, day=15))
    harness.send(add_command)

    harness.send(text_message, text="alice, 15-03")

    assert len(harness.registry.list(GROUP_ID)) == 1
    assert harness.mode() is CommandMode.NONE
    assert "already in the list" in harness.last_reply()


def test_non_admin_cannot_enter_add_mode(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    harness.send(add_command)

    assert harness.mode() is CommandMode.NONE
    assert harness.last_reply().startswith("⛔")


def test_text_from_other_user_is_ignored(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.promote()
    harness.promote(OTHER_ADMIN_ID)
    harness.send(add_command)

    harness.send(text_message, user_id=OTHER_ADMIN_ID, text="Bob, 01-01")

    assert harness.registry.list(GROUP_ID) == ()
    assert harness.mode() is CommandMode.ADDING_ONE


def test_concurrent_adds_both_land(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.bot.lookup_delay = 0.01
    harness.promote()
    harness.promote(OTHER_ADMIN_ID)
    harness.send(add_command)
    harness.send(add_command, user_id=OTHER_ADMIN_ID)

    async def both() -> None:
        await asyncio.gather(
            text_message(harness.update(text="Alice, 15-03"), harness.context),
            text_message(harness.update(user_id=OTHER_ADMIN_ID, text="Bob, 16-03"), harness.context),
        )

    asyncio.run(both())

    assert sorted(entry.name for entry in harness.registry.list(GROUP_ID)) == ["Alice", "Bob"]


def test_add_many_from_document(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.promote()
    harness.send(addmany_command)
    assert harness.mode() is CommandMode.ADDING_MANY
    assert harness.outbox[-1][0] == "sample.json"

    harness.send(
        document_message,
        document=_document([{"name": "Alice", "date": "15-03"}, {"name": "Bob", "date": "29-02"}]),
    )

    assert [entry.name for entry in harness.registry.list(GROUP_ID)] == ["Alice", "Bob"]
    assert harness.mode() is CommandMode.NONE


def test_invalid_document_changes_nothing(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.promote()
    harness.send(addmany_command)

    harness.send(
        document_message,
        document=_document([{"name": "Alice", "date": "15-03"}, {"name": "Bob", "date": "30-02"}]),
    )

    assert harness.registry.list(GROUP_ID) == ()
    assert harness.mode() is CommandMode.NONE
    assert "Entry 2" in harness.last_reply()


def test_cancel_before_document_upload(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.promote()
    harness.send(addmany_command)
    harness.send(cancel_command)
    document = _document([{"name": "Alice", "date": "15-03"}])

    harness.send(document_message, document=document)

    assert harness.registry.get(GROUP_ID) is None
    assert document.downloads == 0
    assert harness.mode() is CommandMode.NONE


def test_demoted_admin_cannot_finish_remove(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.promote()
    harness.registry.add_entry(GROUP_ID, BirthdayEntry(name="Alice", month=3, day=15))
    harness.send(remove_command)
    assert harness.mode() is CommandMode.REMOVING

    harness.demote()
    harness.send(text_message, text="Alice")

    assert harness.last_reply().startswith("⛔")
    assert [entry.name for entry in harness.registry.list(GROUP_ID)] == ["Alice"]
    assert harness.mode() is CommandMode.NONE


def test_remove_by_name(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.promote()
    harness.registry.add_entry(GROUP_ID, BirthdayEntry(name="Alice", month=3, day=15))
    harness.send(remove_command)

    harness.send(text_message, text="alice")

    assert harness.registry.list(GROUP_ID) == ()
    assert "removed" in harness.last_reply()


def test_ambiguous_remove_keeps_mode(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.promote()
    harness.registry.add_entries(
        GROUP_ID,
        [BirthdayEntry(name="Alice", month=3, day=15), BirthdayEntry(name="Alice", month=8, day=1)],
    )
    harness.send(remove_command)

    harness.send(text_message, text="Alice")
    assert harness.mode() is CommandMode.REMOVING

    harness.send(text_message, text="2")
    assert [entry.date_text for entry in harness.registry.list(GROUP_ID)] == ["15-03"]
    assert harness.mode() is CommandMode.NONE


def test_remove_on_empty_list_does_not_enter_mode(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.promote()

    harness.send(remove_command)

    assert harness.mode() is CommandMode.NONE


def test_active_on_new_chat_asks_for_document(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.promote()

    harness.send(active_command)

    assert harness.registry.get(GROUP_ID).notifications_enabled is True
    assert harness.mode() is CommandMode.ADDING_MANY
    assert harness.outbox[-1][0] == "sample.json"


@pytest.mark.parametrize("enabled_before", [True, False])
def test_disable_then_active(tmp_path: Path, enabled_before: bool) -> None:
    harness = Harness(tmp_path)
    harness.promote()
    harness.registry.add_entry(GROUP_ID, BirthdayEntry(name="Alice", month=3, day=15))
    harness.registry.set_enabled(GROUP_ID, enabled_before)

    harness.send(disable_command)
    assert harness.registry.get(GROUP_ID).notifications_enabled is False

    harness.send(active_command)
    assert harness.registry.get(GROUP_ID).notifications_enabled is True
    assert harness.mode() is CommandMode.NONE


def test_list_shows_numbered_entries(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.promote()

    harness.send(list_command)
    assert harness.last_reply() == "No birthdays are currently tracked."

    harness.registry.add_entry(GROUP_ID, BirthdayEntry(name="Alice", month=3, day=15))
    harness.send(list_command)
    assert harness.last_reply() == "Tracked birthdays (1):\n1. Alice - 15-03"


def test_list_requires_admin(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.registry.add_entry(GROUP_ID, BirthdayEntry(name="Alice", month=3, day=15))

    harness.send(list_command)

    assert harness.last_reply().startswith("⛔")


def test_export_sends_importable_document(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.promote()
    harness.registry.add_entry(GROUP_ID, BirthdayEntry(name="Alice", month=3, day=15, username="alice"))

    harness.send(export_command)

    filename, payload = harness.last_reply()
    assert filename == "birthdays.json"
    assert tuple(import_document(payload)) == harness.registry.list(GROUP_ID)


def test_export_of_empty_chat(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.promote()

    harness.send(export_command)

    assert harness.last_reply() == "No birthdays are currently tracked."


def test_stats_for_chat(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.promote()

    harness.send(stats_command)
    assert "/active" in harness.last_reply()

    harness.registry.add_entry(GROUP_ID, BirthdayEntry(name="Alice", month=3, day=15))
    harness.send(stats_command)
    assert "Birthdays tracked: 1" in harness.last_reply()
    assert "Next birthday: Alice" in harness.last_reply()


def test_help_depends_on_permissions(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    harness.send(help_command)
    assert "/addmany" not in harness.last_reply()

    harness.promote()
    harness.send(help_command)
    assert "/addmany" in harness.last_reply()
    assert "/backup" not in harness.last_reply()


def test_checkcontrol_answers(tmp_path: Path) -> None:
    harness = Harness(tmp_path, maintainer_user_id=1)

    harness.send(checkcontrol_command)
    assert harness.last_reply() == "Unfortunately, you cannot manage me in this group 😞"

    harness.promote()
    harness.send(checkcontrol_command)
    assert harness.last_reply() == "You can manage me in this group! 😄"

    harness.send(checkcontrol_command, user_id=1)
    assert harness.last_reply() == "You are my creator! 🙏"


def test_file_sends_sample(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    harness.send(file_command)

    filename, payload = harness.last_reply()
    assert filename == "sample.json"
    assert import_document(payload)


def test_status_for_maintainer_only(tmp_path: Path) -> None:
    harness = Harness(
        tmp_path,
        maintainer_user_id=1,
        job_queue=FakeJobQueue(names=(NOTIFICATION_JOB_NAME, BACKUP_JOB_NAME)),
    )
    harness.registry.add_entry(GROUP_ID, BirthdayEntry(name="Alice", month=3, day=15))
    harness.promote()

    harness.send(status_command)
    assert harness.outbox == []

    harness.send(status_command, user_id=1)
    text = harness.last_reply()
    assert f"{NOTIFICATION_JOB_NAME} (active 🟢)" in text
    assert "daily-health-check (inactive 🔴)" in text
    assert "Chats: 1 (1 active)" in text
    assert "Birthdays: 1" in text


def test_backup_for_maintainer_only(tmp_path: Path) -> None:
    harness = Harness(tmp_path, maintainer_user_id=1)
    harness.registry.add_entry(GROUP_ID, BirthdayEntry(name="Alice", month=3, day=15))
    harness.promote()

    harness.send(backup_command)
    assert harness.outbox == []
    assert not (tmp_path / "backup.json").exists()

    harness.send(backup_command, user_id=1)
    assert harness.last_reply() == "Birthdays saved."
    assert load_registry(tmp_path / "backup.json").list(GROUP_ID) == harness.registry.list(GROUP_ID)


def _freeze_now(monkeypatch: pytest.MonkeyPatch, moment: datetime) -> None:
    class FrozenDatetime(datetime):
        @classmethod
        def now(cls, tz=None):
            return moment

    monkeypatch.setattr(main, "datetime", FrozenDatetime)


def _catch_up_harness(tmp_path: Path, *, enabled: bool) -> Harness:
    harness = Harness(tmp_path, notify_catch_up=enabled)
    harness.registry.add_entry(GROUP_ID, BirthdayEntry(name="Alice", month=3, day=15))
    return harness


def test_catch_up_is_off_by_default(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _freeze_now(monkeypatch, datetime(2026, 3, 15, 9, 0, tzinfo=timezone.utc))
    harness = _catch_up_harness(tmp_path, enabled=False)

    asyncio.run(main.startup_catchup(harness.application))

    assert harness.bot.sent_messages == []


def test_catch_up_sweeps_after_trigger_time(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _freeze_now(monkeypatch, datetime(2026, 3, 15, 9, 0, tzinfo=timezone.utc))
    harness = _catch_up_harness(tmp_path, enabled=True)

    asyncio.run(main.startup_catchup(harness.application))
    asyncio.run(main.startup_catchup(harness.application))

    assert [chat_id for chat_id, _ in harness.bot.sent_messages] == [GROUP_ID]


def test_catch_up_waits_before_trigger_time(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _freeze_now(monkeypatch, datetime(2026, 3, 15, 6, 59, tzinfo=timezone.utc))
    harness = _catch_up_harness(tmp_path, enabled=True)

    asyncio.run(main.startup_catchup(harness.application))

    assert harness.bot.sent_messages == []


def test_catch_up_skips_day_already_fired(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _freeze_now(monkeypatch, datetime(2026, 3, 15, 9, 0, tzinfo=timezone.utc))
    harness = _catch_up_harness(tmp_path, enabled=True)
    save_state_atomic(tmp_path / "notification_state.json", NotificationState(last_fired=date(2026, 3, 15)))

    asyncio.run(main.startup_catchup(harness.application))

    assert harness.bot.sent_messages == []
