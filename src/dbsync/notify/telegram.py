"""
Conflict notifications.

The worker emits one ConflictNotice per change-log entry that hit at least
one conflict. Delivery is best-effort: the worker logs and drops notifier
errors so a failing sink never blocks replication.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from telegram import Bot

logger = logging.getLogger(__name__)

_TELEGRAM_MAX_LEN = 4096


@dataclass
class ConflictNotice:
    table_name: str
    record_id: str
    source_node: str
    target_nodes: List[str]
    conflict_type: str
    time: datetime = field(default_factory=datetime.utcnow)

    def render(self) -> str:
        return (
            "⚠️ Replication conflict\n"
            f"Table: {self.table_name}\n"
            f"Record: {self.record_id}\n"
            f"Source: {self.source_node}\n"
            f"Targets: {', '.join(self.target_nodes)}\n"
            f"Type: {self.conflict_type}\n"
            f"Detected: {self.time.isoformat(sep=' ', timespec='seconds')} UTC"
        )


class LoggingNotifier:
    """Default sink: writes the notice to the log."""

    async def notify_conflict(self, notice: ConflictNotice) -> None:
        logger.warning(
            "Conflict notice: %s[%s] %s -> %s (%s)",
            notice.table_name, notice.record_id, notice.source_node,
            ", ".join(notice.target_nodes), notice.conflict_type,
        )


class TelegramNotifier:
    """Sends notices to one Telegram chat."""

    def __init__(self, token: str, chat_id: int, bot: Optional[Bot] = None):
        self.chat_id = chat_id
        self._bot = bot or Bot(token)
        self._initialized = False

    async def notify_conflict(self, notice: ConflictNotice) -> None:
        if not self._initialized:
            await self._bot.initialize()
            self._initialized = True
        await self._bot.send_message(
            chat_id=self.chat_id, text=notice.render()[:_TELEGRAM_MAX_LEN]
        )
        logger.info("Sent conflict notice for %s[%s] to chat %s",
                    notice.table_name, notice.record_id, self.chat_id)

    async def close(self) -> None:
        if self._initialized:
            await self._bot.shutdown()
            self._initialized = False


def build_notifier(settings):
    """TelegramNotifier when a bot token and chat are configured, else LoggingNotifier."""
    if settings.telegram_bot_token and settings.telegram_chat_id:
        return TelegramNotifier(settings.telegram_bot_token, settings.telegram_chat_id)
    logger.info("TELEGRAM_BOT_TOKEN or TELEGRAM_CHAT_ID not set: conflicts are only logged.")
    return LoggingNotifier()
