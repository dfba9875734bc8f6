from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date

from telegram import Chat, Update
from telegram.constants import ChatType
from telegram.error import TelegramError
from telegram.ext import CallbackContext, CommandHandler, MessageHandler, filters

from birthday_reminder.backup_service import BACKUP_JOB_NAME, BackupService
from birthday_reminder.command_modes import CommandMode, ModeTracker
from birthday_reminder.date_logic import days_until_birthday, next_birthday
from birthday_reminder.errors import (
    AmbiguousEntry,
    DuplicateEntry,
    Forbidden,
    NotFound,
    RegistryFull,
    ValidationError,
)
from birthday_reminder.exchange import export_document, import_document, parse_birthday_line, sample_document
from birthday_reminder.models import BirthdayEntry, ChatRecord
from birthday_reminder.notification_service import (
    HEALTH_CHECK_JOB_NAME,
    NOTIFICATION_JOB_NAME,
    NotificationService,
    format_person,
    utc_today,
)
from birthday_reminder.permissions import PermissionGate
from birthday_reminder.registry import BirthdayRegistry
from birthday_reminder.settings import Settings

LOGGER = logging.getLogger(__name__)

MAX_DOCUMENT_BYTES = 1024 * 1024
SAMPLE_FILENAME = "sample.json"
EXPORT_FILENAME = "birthdays.json"

GREETING = (
    "Hi! I'm here for everyone who keeps forgetting birthdays 😁\n\n"
    "Add me to a group, a channel or just talk to me here, and I will remind "
    "you to congratulate your friends, colleagues and relatives.\n\n"
    "Send /help to see how to set me up."
)

ADD_PROMPT = (
    "Send the birthday as one message:\n"
    "Name, DD-MM\n"
    "or\n"
    "Name, DD-MM, @username\n\n"
    "Send /cancel to stop."
)

ADD_MANY_PROMPT = (
    "Send me a filled-in JSON file with the birthdays. "
    "Here is an example of what the file should look like. Send /cancel to stop."
)

REMOVE_PROMPT = "Send the number or the name of the birthday to remove. Send /cancel to stop."


@dataclass(frozen=True)
class HandlerDependencies:
    settings: Settings
    registry: BirthdayRegistry
    modes: ModeTracker
    gate: PermissionGate
    notifications: NotificationService
    backup: BackupService


def _deps(context: CallbackContext) -> HandlerDependencies:
    return context.application.bot_data["handler_deps"]


def actor_id(update: Update) -> int | None:
    """Return the id acting on behalf of the update.

    Posts made in the name of the chat itself (channel posts, anonymous group
    admins) act as the chat, which only its administrators can do.
    """
    message = update.effective_message
    chat = update.effective_chat
    if message is not None and chat is not None:
        sender_chat = getattr(message, "sender_chat", None)
        if sender_chat is not None and sender_chat.id == chat.id:
            return chat.id

    if update.effective_user is not None:
        return update.effective_user.id
    return None


def describe_place(chat: Chat) -> str:
    if chat.type in {ChatType.GROUP, ChatType.SUPERGROUP}:
        return "in this group"
    if chat.type == ChatType.CHANNEL:
        return "in this channel"
    return "in this chat"


async def _require_admin(update: Update, deps: HandlerDependencies) -> bool:
    try:
        await deps.gate.check(update.effective_chat.id, actor_id(update))
    except Forbidden as exc:
        await update.effective_message.reply_text(f"⛔ {exc}.")
        return False
    return True


def _render_help(*, can_manage: bool, is_maintainer: bool) -> str:
    lines = [
        "Use these commands to talk to me 🤖",
        "",
        "/start - Show the greeting",
        "/help - Show this message",
        "/checkcontrol - Check whether you can manage me here",
        "/file - Get a sample JSON file with birthdays",
    ]
    if can_manage:
        lines.extend(
            [
                "",
                "Administrator commands:",
                "/add - Add one birthday",
                "/addmany - Add several birthdays from a JSON file",
                "/remove - Remove a birthday",
                "/cancel - Leave add/remove mode",
                "/active - Turn birthday notifications on",
                "/disable - Turn birthday notifications off",
                "/list - Show the birthday list",
                "/export - Download the birthday list as JSON",
                "/stats - Show statistics for this chat",
            ]
        )
    if is_maintainer:
        lines.extend(
            [
                "",
                "Maintainer commands:",
                "/status - Show bot and task status",
                "/backup - Save a backup right now",
            ]
        )
    return "\n".join(lines)


def _render_list_message(entries: tuple[BirthdayEntry, ...]) -> str:
    lines = [f"Tracked birthdays ({len(entries)}):"]
    for index, entry in enumerate(entries, start=1):
        lines.append(f"{index}. {format_person(entry)} - {entry.date_text}")
    return "\n".join(lines)


def _render_chat_stats(record: ChatRecord | None, today: date) -> str:
    if record is None:
        return "I am not set up in this chat yet. Send /active to start."

    status = "on 🟢" if record.notifications_enabled else "off 🔴"
    lines = [
        f"Birthdays tracked: {len(record.birthdays)}",
        f"Notifications: {status}",
    ]
    if record.birthdays:
        soonest = min(
            record.birthdays,
            key=lambda entry: (days_until_birthday(entry, today), entry.name.lower()),
        )
        days = days_until_birthday(soonest, today)
        when = "today" if days == 0 else f"in {days}d ({next_birthday(soonest, today).isoformat()})"
        lines.append(f"Next birthday: {soonest.name} {when}")
    return "\n".join(lines)


def _render_status(context: CallbackContext, deps: HandlerDependencies) -> str:
    stats = deps.registry.stats()
    lines = ["Bot is up and running 🟢", "", "Internal tasks:"]
    for name in (NOTIFICATION_JOB_NAME, BACKUP_JOB_NAME, HEALTH_CHECK_JOB_NAME):
        jobs = context.job_queue.get_jobs_by_name(name) if context.job_queue else ()
        active = any(job.enabled for job in jobs)
        lines.append(f"{name} ({'active 🟢' if active else 'inactive 🔴'})")
    lines.extend(
        [
            "",
            f"Chats: {stats.chats} ({stats.active_chats} active)",
            f"Birthdays: {stats.birthdays}",
            f"Pending add/remove modes: {len(deps.modes.pending())}",
        ]
    )
    return "\n".join(lines)


async def start_command(update: Update, context: CallbackContext) -> None:
    await update.effective_message.reply_text(GREETING)


async def help_command(update: Update, context: CallbackContext) -> None:
    deps = _deps(context)
    user_id = actor_id(update)
    can_manage = await deps.gate.is_allowed(update.effective_chat.id, user_id)
    text = _render_help(can_manage=can_manage, is_maintainer=deps.gate.is_maintainer(user_id))
    await update.effective_message.reply_text(text)


async def checkcontrol_command(update: Update, context: CallbackContext) -> None:
    deps = _deps(context)
    user_id = actor_id(update)
    place = describe_place(update.effective_chat)

    if deps.gate.is_maintainer(user_id):
        text = "You are my creator! 🙏"
    elif await deps.gate.is_allowed(update.effective_chat.id, user_id):
        text = f"You can manage me {place}! 😄"
    else:
        text = f"Unfortunately, you cannot manage me {place} 😞"
    await update.effective_message.reply_text(text)


async def file_command(update: Update, context: CallbackContext) -> None:
    await update.effective_message.reply_document(document=sample_document(), filename=SAMPLE_FILENAME)


async def add_command(update: Update, context: CallbackContext) -> None:
    deps = _deps(context)
    if not await _require_admin(update, deps):
        return

    deps.modes.enter(update.effective_chat.id, actor_id(update), CommandMode.ADDING_ONE)
    await update.effective_message.reply_text(ADD_PROMPT)


async def addmany_command(update: Update, context: CallbackContext) -> None:
    deps = _deps(context)
    if not await _require_admin(update, deps):
        return

    deps.modes.enter(update.effective_chat.id, actor_id(update), CommandMode.ADDING_MANY)
    await update.effective_message.reply_text(ADD_MANY_PROMPT)
    await update.effective_message.reply_document(document=sample_document(), filename=SAMPLE_FILENAME)


async def remove_command(update: Update, context: CallbackContext) -> None:
    deps = _deps(context)
    if not await _require_admin(update, deps):
        return

    chat_id = update.effective_chat.id
    entries = deps.registry.list(chat_id)
    if not entries:
        await update.effective_message.reply_text("There are no birthdays to remove.")
        return

    deps.modes.enter(chat_id, actor_id(update), CommandMode.REMOVING)
    await update.effective_message.reply_text(f"{_render_list_message(entries)}\n\n{REMOVE_PROMPT}")


async def cancel_command(update: Update, context: CallbackContext) -> None:
    deps = _deps(context)
    previous = deps.modes.cancel(update.effective_chat.id, actor_id(update))
    if previous is CommandMode.NONE:
        await update.effective_message.reply_text("Nothing to cancel.")
    else:
        await update.effective_message.reply_text("Canceled. No changes were made.")


async def active_command(update: Update, context: CallbackContext) -> None:
    deps = _deps(context)
    if not await _require_admin(update, deps):
        return

    chat_id = update.effective_chat.id
    place = describe_place(update.effective_chat)
    record = deps.registry.get(chat_id)

    if record is None or not record.birthdays:
        deps.registry.set_enabled(chat_id, True)
        deps.modes.enter(chat_id, actor_id(update), CommandMode.ADDING_MANY)
        await update.effective_message.reply_text(ADD_MANY_PROMPT)
        await update.effective_message.reply_document(document=sample_document(), filename=SAMPLE_FILENAME)
        return

    if record.notifications_enabled:
        await update.effective_message.reply_text(f"My notifications are already on {place}.")
        return

    deps.registry.set_enabled(chat_id, True)
    await update.effective_message.reply_text(f"My notifications are on again {place} 🎉")


async def disable_command(update: Update, context: CallbackContext) -> None:
    deps = _deps(context)
    if not await _require_admin(update, deps):
        return

    chat_id = update.effective_chat.id
    place = describe_place(update.effective_chat)
    record = deps.registry.get(chat_id)
    if record is not None and not record.notifications_enabled:
        await update.effective_message.reply_text(f"My notifications are already off {place}.")
        return

    deps.registry.set_enabled(chat_id, False)
    await update.effective_message.reply_text(
        f"My notifications are off {place}. Send /active to turn them back on."
    )


async def list_command(update: Update, context: CallbackContext) -> None:
    deps = _deps(context)
    if not await _require_admin(update, deps):
        return

    entries = deps.registry.list(update.effective_chat.id)
    if not entries:
        await update.effective_message.reply_text("No birthdays are currently tracked.")
        return
    await update.effective_message.reply_text(_render_list_message(entries))


async def export_command(update: Update, context: CallbackContext) -> None:
    deps = _deps(context)
    if not await _require_admin(update, deps):
        return

    record = deps.registry.get(update.effective_chat.id)
    if record is None or not record.birthdays:
        await update.effective_message.reply_text("No birthdays are currently tracked.")
        return
    await update.effective_message.reply_document(document=export_document(record), filename=EXPORT_FILENAME)


async def stats_command(update: Update, context: CallbackContext) -> None:
    deps = _deps(context)
    if not await _require_admin(update, deps):
        return

    record = deps.registry.get(update.effective_chat.id)
    await update.effective_message.reply_text(_render_chat_stats(record, utc_today()))


async def status_command(update: Update, context: CallbackContext) -> None:
    deps = _deps(context)
    if not deps.gate.is_maintainer(actor_id(update)):
        return
    await update.effective_message.reply_text(_render_status(context, deps))


async def backup_command(update: Update, context: CallbackContext) -> None:
    deps = _deps(context)
    if not deps.gate.is_maintainer(actor_id(update)):
        return

    if await deps.backup.run_backup():
        await update.effective_message.reply_text("Birthdays saved.")
    else:
        await update.effective_message.reply_text("Saving the birthdays failed, see the logs.")


async def text_message(update: Update, context: CallbackContext) -> None:
    deps = _deps(context)
    chat_id = update.effective_chat.id
    user_id = actor_id(update)
    if user_id is None:
        return

    mode = deps.modes.current(chat_id, user_id)
    text = update.effective_message.text or ""
    if mode is CommandMode.ADDING_ONE:
        await _complete_add(update, deps, chat_id, user_id, text)
    elif mode is CommandMode.REMOVING:
        await _complete_remove(update, deps, chat_id, user_id, text)


async def document_message(update: Update, context: CallbackContext) -> None:
    deps = _deps(context)
    chat_id = update.effective_chat.id
    user_id = actor_id(update)
    if user_id is None:
        return

    if deps.modes.current(chat_id, user_id) is CommandMode.ADDING_MANY:
        await _complete_import(update, deps, chat_id, user_id)


async def _complete_add(
    update: Update,
    deps: HandlerDependencies,
    chat_id: int,
    user_id: int,
    text: str,
) -> None:
    LOGGER.info("Birthday received from chat %s", chat_id)
    try:
        entry = parse_birthday_line(text)
    except ValueError as exc:
        await update.effective_message.reply_text(f"{exc}. Please try again or send /cancel.")
        return

    allowed = await _require_admin(update, deps)
    deps.modes.finish(chat_id, user_id)
    if not allowed:
        return

    try:
        deps.registry.add_entry(chat_id, entry)
    except DuplicateEntry as exc:
        await update.effective_message.reply_text(f"{exc}. Nothing was added.")
        return
    except RegistryFull:
        LOGGER.error("Birthday not added to chat %s: registry is full", chat_id)
        await update.effective_message.reply_text(
            "Sorry, I can't take new birthdays right now. Please try again later."
        )
        return

    await update.effective_message.reply_text(f"Birthday of {format_person(entry)} ({entry.date_text}) added 🎉")


async def _complete_remove(
    update: Update,
    deps: HandlerDependencies,
    chat_id: int,
    user_id: int,
    text: str,
) -> None:
    target = text.strip()
    if not target:
        await update.effective_message.reply_text(REMOVE_PROMPT)
        return

    if not await _require_admin(update, deps):
        deps.modes.finish(chat_id, user_id)
        return

    try:
        removed = deps.registry.remove_entry(chat_id, target)
    except AmbiguousEntry as exc:
        await update.effective_message.reply_text(f"{exc}. Send the number instead.")
        return
    except NotFound as exc:
        deps.modes.finish(chat_id, user_id)
        await update.effective_message.reply_text(f"{exc}. Nothing was removed.")
        return

    deps.modes.finish(chat_id, user_id)
    await update.effective_message.reply_text(
        f"Birthday of {format_person(removed)} ({removed.date_text}) removed."
    )


async def _complete_import(update: Update, deps: HandlerDependencies, chat_id: int, user_id: int) -> None:
    deps.modes.finish(chat_id, user_id)
    LOGGER.info("Document received from chat %s", chat_id)

    if not await _require_admin(update, deps):
        return

    document = update.effective_message.document
    if document.file_size is not None and document.file_size > MAX_DOCUMENT_BYTES:
        await update.effective_message.reply_text("The file is too large. Send /addmany to try again.")
        return

    try:
        telegram_file = await document.get_file()
        raw = await telegram_file.download_as_bytearray()
    except TelegramError:
        LOGGER.exception("Could not download document from chat %s", chat_id)
        await update.effective_message.reply_text("I couldn't download the file. Send /addmany to try again.")
        return

    try:
        entries = import_document(bytes(raw))
        deps.registry.add_entries(chat_id, entries)
    except ValidationError as exc:
        LOGGER.warning("Rejected document from chat %s: %s", chat_id, exc)
        await update.effective_message.reply_text(
            f"The file is not valid: {exc}. Nothing was added. Send /addmany to try again."
        )
        return
    except DuplicateEntry as exc:
        await update.effective_message.reply_text(f"{exc}. Nothing was added. Send /addmany to try again.")
        return
    except RegistryFull:
        LOGGER.error("Birthdays not added to chat %s: registry is full", chat_id)
        await update.effective_message.reply_text(
            "Sorry, I can't take new birthdays right now. Please try again later."
        )
        return

    await update.effective_message.reply_text(
        f"{len(entries)} birthday(s) loaded 🎉 Notifications arrive on the day at 07:00 UTC."
    )


async def error_handler(update: object, context: CallbackContext) -> None:
    LOGGER.error("Unhandled error while processing an update", exc_info=context.error)


def build_handlers(settings: Settings) -> list:
    # New group messages and channel posts; edits never count as input.
    incoming = filters.UpdateType.MESSAGE | filters.UpdateType.CHANNEL_POST

    commands = {
        "start": start_command,
        "help": help_command,
        "checkcontrol": checkcontrol_command,
        "file": file_command,
        "add": add_command,
        "addmany": addmany_command,
        "remove": remove_command,
        "cancel": cancel_command,
        "active": active_command,
        "disable": disable_command,
        "list": list_command,
        "export": export_command,
        "stats": stats_command,
    }
    handlers: list = [CommandHandler(name, callback, filters=incoming) for name, callback in commands.items()]

    if settings.maintainer_user_id is not None:
        maintainer_only = filters.UpdateType.MESSAGE & filters.User(user_id=settings.maintainer_user_id)
        handlers.extend(
            [
                CommandHandler("status", status_command, filters=maintainer_only),
                CommandHandler("backup", backup_command, filters=maintainer_only),
            ]
        )

    handlers.extend(
        [
            MessageHandler(incoming & filters.TEXT & ~filters.COMMAND, text_message),
            MessageHandler(incoming & filters.Document.ALL, document_message),
        ]
    )
    return handlers
