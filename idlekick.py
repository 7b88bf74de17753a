#! /usr/bin/python

"""
IdleKick - Lurkers out, on the hour
Watches a single Telegram group, remembers when each member was last heard from,
and bans everyone who has been silent longer than the configured DURATION.
"""
import sys
import argparse
import asyncio
import logging
import sqlite3
from logging.handlers import TimedRotatingFileHandler
from datetime import datetime
from enum import Enum

from tqdm import tqdm
from telegram import Bot, BotCommand, Update
from telegram.constants import ChatType
from telegram.error import ChatMigrated, TelegramError
from telegram.ext import (
    Application,
    CallbackContext,
    CommandHandler,
    TypeHandler,
)

from config import (
    WHEN_COMMAND,
    WHEN_DESCRIPTION,
    EMPTY_REPORT_MESSAGE,
    ConfigError,
    load_config,
)
from db_utils import ActivityStore, format_timedelta, utc_timezone

__version__ = "0.1.0"

# Telegram treats an until_date under 30 seconds from now as a permanent ban
BAN_FOREVER = 0

MEMBER_STATUSES = ["member", "administrator", "creator"]

max_message_length = 4096


class EventType(Enum):
    JOINED = "joined"
    LEFT = "left"
    POSTED = "posted"


def configure_logging(level="INFO", log_file="idlekick.log"):
    # Rotate logs at midnight, retain 7 days
    log_handler = TimedRotatingFileHandler(log_file, when='midnight', interval=1, backupCount=7)
    log_handler.suffix = "%Y-%m-%d"  # Suffix for log files (e.g., 'idlekick.log.2023-10-22')

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            log_handler,
        ]
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter("IDLEKICK: %(message)s"))
    logging.getLogger().addHandler(console_handler)

    # httpx logs every long-poll request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def now_utc():
    return datetime.now(utc_timezone)


# ********* ACTIVITY RECORDING *********

def is_chat_member(chat_member):
    # Restricted users may or may not still be in the chat
    if chat_member.status == "restricted":
        return bool(chat_member.is_member)
    return chat_member.status in MEMBER_STATUSES


def membership_change(chat_member_updated):
    """Map a chat_member transition to JOINED/LEFT, or None if membership did not change."""
    was_member = is_chat_member(chat_member_updated.old_chat_member)
    is_member = is_chat_member(chat_member_updated.new_chat_member)

    if not was_member and is_member:
        return EventType.JOINED
    if was_member and not is_member:
        return EventType.LEFT
    return None


def classify_update(update):
    """Work out what an update means for the activity table.

    Returns (EventType, user_ids). Joins and leaves take precedence over the
    sender; anything else that has a sender counts as that sender posting.
    Updates with nobody to attribute them to yield (None, []).
    """
    if update.chat_member:
        change = membership_change(update.chat_member)
        if change is not None:
            return change, [update.chat_member.new_chat_member.user.id]

    message = update.effective_message
    if message:
        if message.left_chat_member:
            return EventType.LEFT, [message.left_chat_member.id]
        if message.new_chat_members:
            return EventType.JOINED, [member.id for member in message.new_chat_members]

    if update.effective_user:
        return EventType.POSTED, [update.effective_user.id]

    return None, []


def follow_migration(update, chat_ids):
    """Start accepting the supergroup a watched group was upgraded to. Not persisted."""
    message = update.effective_message
    if not message:
        return None

    if message.migrate_to_chat_id and message.chat_id in chat_ids:
        new_chat_id = message.migrate_to_chat_id
    elif message.migrate_from_chat_id and message.migrate_from_chat_id in chat_ids:
        new_chat_id = message.chat_id
    else:
        return None

    if new_chat_id not in chat_ids:
        chat_ids.add(new_chat_id)
        logging.warning(f"Chat migrated to {new_chat_id}. Recording it for this run; update TELEGRAM_CHAT to keep it.")
    return new_chat_id


def record_activity(store, update, now=None, chat_ids=None):
    chat = update.effective_chat
    # Conversations with the bot itself are not group activity
    if chat and chat.type == ChatType.PRIVATE:
        return None
    # Neither is anything that happens in other groups the bot sits in
    if chat and chat_ids is not None and chat.id not in chat_ids:
        logging.debug(f"Ignoring update from unwatched chat {chat.id}")
        return None

    event, user_ids = classify_update(update)
    if event is None:
        return None

    now = now or now_utc()
    for user_id in user_ids:
        try:
            if event == EventType.LEFT:
                logging.info(f"remove user: {user_id}")
                store.remove(user_id)
            else:
                logging.info(f"update user: {user_id} ({event.value}) now: {int(now.timestamp())}")
                store.upsert(user_id, now)
        except sqlite3.Error as e:
            logging.error(f"Error recording {event.value} for user {user_id}: {e}. Event dropped.")
    return event


async def handle_update(update: Update, context: CallbackContext):
    chat_ids = context.bot_data.setdefault("chat_ids", {context.bot_data["config"].chat_id})
    follow_migration(update, chat_ids)
    record_activity(context.bot_data["store"], update, chat_ids=chat_ids)


# ********* REMOVAL *********

async def ban_member(bot, chat_id, user_id):
    """Ban user_id from chat_id for good.

    A group that was upgraded to a supergroup answers with ChatMigrated; the
    ban is then sent once more to the new chat id and that result is returned.
    The new id is not remembered, so the next scan rediscovers it.
    """
    try:
        return await bot.ban_chat_member(chat_id=chat_id, user_id=user_id, until_date=BAN_FOREVER)
    except ChatMigrated as e:
        if not e.new_chat_id:
            raise
        logging.warning(f"Chat {chat_id} migrated to {e.new_chat_id}. Retrying ban of {user_id} there.")
        return await bot.ban_chat_member(chat_id=e.new_chat_id, user_id=user_id, until_date=BAN_FOREVER)


# ********* EVICTION SCANNING *********

async def eviction_scan(bot, store, chat_id, duration, now=None):
    """Run one scan cycle and return how many members were banned."""
    now = now or now_utc()
    threshold = now - duration

    try:
        active_count = store.count_active(threshold)
        # An empty table means no data yet, not that everyone is idle
        if active_count == 0:
            logging.warning(f"No activity recorded since {threshold:%Y-%m-%d %H:%M:%S} ({duration}). Skipping scan.")
            return 0
        stale_users = store.find_stale(threshold)
    except sqlite3.Error as e:
        logging.error(f"Error querying user_activity during scan: {e}. Skipping this cycle.")
        return 0

    if not stale_users:
        logging.info(f"Scan found no inactive users ({active_count} active).")
        return 0

    logging.warning(f"Scan found {len(stale_users)} inactive users ({active_count} active). Banning from {chat_id}.")

    banned_count = 0
    with tqdm(total=len(stale_users), desc="Evicting", unit="user") as pbar:
        for record in stale_users:
            last_activity_readable = datetime.fromtimestamp(record.last_activity, utc_timezone).strftime('%d %B, %Y - %H:%M:%S')
            try:
                logging.warning(f"kick {record.user_id} (last activity {last_activity_readable})")
                await ban_member(bot, chat_id, record.user_id)
                banned_count += 1
            except TelegramError as e:
                logging.error(f"ban {record.user_id}: {e}")
            except Exception as e:
                logging.error(f"Unexpected error banning {record.user_id}: {e}")
            pbar.update(1)

    return banned_count


async def eviction_scan_job(context: CallbackContext):
    cfg = context.bot_data["config"]
    await eviction_scan(context.bot, context.bot_data["store"], cfg.chat_id, cfg.duration)


# ********* REPORTING *********

async def list_timestamps(bot, store, now=None):
    """One line per known member, least recently active first: '@handle first last elapsed'."""
    now = now or now_utc()
    entries = []
    for record in store.list_all_sorted_by_activity():
        try:
            chat = await bot.get_chat(record.user_id)
        except TelegramError as e:
            logging.error(f"chat by id: {record.user_id}: {e}")
            continue

        elapsed = now - datetime.fromtimestamp(record.last_activity, utc_timezone)
        entries.append(
            f"@{chat.username or ''} {chat.first_name or ''} {chat.last_name or ''} {format_timedelta(elapsed)}"
        )
    return "\n".join(entries)


def split_message(text):
    # Break on line boundaries so no entry is cut in half
    chunks = []
    current = ""
    for line in text.split("\n"):
        if current and len(current) + len(line) + 1 > max_message_length:
            chunks.append(current)
            current = ""
        current = f"{current}\n{line}" if current else line[:max_message_length]
    if current:
        chunks.append(current)
    return chunks


async def when_command(update: Update, context: CallbackContext):
    """Send the activity report privately to whoever asked."""
    user = update.effective_user
    if not user:
        return
    try:
        report = await list_timestamps(context.bot, context.bot_data["store"])
    except sqlite3.Error as e:
        logging.error(f"Error building report for {user.id}: {e}")
        return

    for chunk in split_message(report or EMPTY_REPORT_MESSAGE):
        await context.bot.send_message(chat_id=user.id, text=chunk)


async def print_stats(cfg, store):
    async with Bot(cfg.token) as bot:
        report = await list_timestamps(bot, store)
    print(report or EMPTY_REPORT_MESSAGE)


# Registered error handler for the app
async def error(update, context):
    err = f"Update: {update}\nError: {context.error}"
    logging.error(err, exc_info=context.error)
    return


# ********* MAIN *********

async def post_init(application: Application):
    await application.bot.set_my_commands([BotCommand(WHEN_COMMAND, WHEN_DESCRIPTION)])
    logging.warning("idlekick started")


def build_application(cfg, store):
    application = Application.builder().token(cfg.token).post_init(post_init).build()

    application.bot_data["config"] = cfg
    application.bot_data["store"] = store
    application.bot_data["chat_ids"] = {cfg.chat_id}

    # Command first: handlers in one group stop at the first match
    application.add_handler(CommandHandler(WHEN_COMMAND, when_command))
    application.add_handler(TypeHandler(Update, handle_update))
    application.add_error_handler(error)

    # First cycle straight away, then on every interval
    application.job_queue.run_repeating(
        eviction_scan_job,
        interval=cfg.scan_interval,
        first=0,
        name="eviction_scan",
    )
    return application


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="idlekick",
        description="Ban group members who have been silent for too long.",
    )
    parser.add_argument("-S", "--stats", action="store_true", help="Show stats and exit.")
    parser.add_argument("--version", action="version", version=f"idlekick {__version__}")
    return parser.parse_args(argv)


def main(argv=None) -> None:
    """Run bot."""
    args = parse_args(argv)

    try:
        cfg = load_config()
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO, format="IDLEKICK: %(message)s")
        logging.critical(f"Configuration error: {e}")
        sys.exit(1)

    configure_logging(cfg.log_level)

    store = ActivityStore(cfg.database_path)
    try:
        store.initialize_db()
    except sqlite3.Error as e:
        logging.critical(f"Could not open activity database {cfg.database_path}: {e}")
        sys.exit(1)

    if args.stats:
        try:
            asyncio.run(print_stats(cfg, store))
        except (TelegramError, sqlite3.Error) as e:
            logging.critical(f"Could not build stats: {e}")
            sys.exit(1)
        return

    application = build_application(cfg, store)

    # Run the bot until SIGINT or SIGTERM
    try:
        application.run_polling(allowed_updates=Update.ALL_TYPES)
    except TelegramError as e:
        logging.critical(f"Telegram session failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
