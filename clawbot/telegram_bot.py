"""Telegram bot using python-telegram-bot that relays chat to the model."""

from __future__ import annotations

import logging
import os
from typing import Any

from telegram import Update
from telegram.constants import ChatAction
from telegram.ext import (
    Application,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from clawbot.chat_service import ChatService, split_message
from clawbot.llm import read_secret
from clawbot.profile import Profile

logger = logging.getLogger(__name__)

TOKEN_SECRET_FILE = "telegram_bot_token.txt"
TOKEN_ENV_VAR = "TELEGRAM_BOT_TOKEN"


def load_token(profile: Profile) -> str | None:
    token = read_secret(profile.paths.secrets_dir, TOKEN_SECRET_FILE)
    if token:
        return token
    raw = os.getenv(TOKEN_ENV_VAR, "").strip()
    return raw if raw else None


def _command_argument(update: Update) -> str:
    text = (update.effective_message.text or "").strip() if update.effective_message else ""
    parts = text.split(maxsplit=1)
    return parts[1].strip() if len(parts) > 1 else ""


def format_user_stats(stats: dict[str, Any]) -> str:
    quota = stats["quota"]
    joined = stats["joined"] or "today"
    return (
        "📊 YOUR STATS\n\n"
        f"Messages: {stats['messages']}\n"
        f"Joined: {str(joined)[:10]}\n\n"
        f"{quota.tier.indicator} AI quota: {quota.remaining}/{quota.limit} left ({quota.percentage}% used)"
    )


class TelegramBot:
    def __init__(self, profile: Profile, chat_service: ChatService) -> None:
        self._profile = profile
        self._chat = chat_service
        self._token: str | None = None
        self._app: Application | None = None

    @property
    def enabled(self) -> bool:
        return self._token is not None

    def build(self, token: str) -> Application:
        self._token = token
        self._app = Application.builder().token(token).post_init(self._post_init).build()
        self._setup_handlers()
        return self._app

    def run(self, token: str) -> None:
        """Poll until SIGINT/SIGTERM; python-telegram-bot installs the signal handlers."""
        app = self.build(token)
        logger.info("Telegram polling started for profile %s", self._profile.name)
        app.run_polling(drop_pending_updates=False, allowed_updates=Update.ALL_TYPES)
        logger.info("Telegram polling stopped for profile %s", self._profile.name)
        self._app = None
        self._token = None

    async def _post_init(self, app: Application) -> None:
        await app.bot.set_my_commands(
            [
                ("start", "Introduction"),
                ("chat", "Talk with the AI"),
                ("caption", "Generate a video caption"),
                ("status", "Your stats"),
                ("quota", "Daily AI quota"),
                ("reset", "Forget this conversation"),
                ("help", "Show commands"),
            ]
        )

    def _setup_handlers(self) -> None:
        assert self._app is not None
        self._app.add_handler(CommandHandler("start", self._cmd_start))
        self._app.add_handler(CommandHandler("help", self._cmd_help))
        self._app.add_handler(CommandHandler("chat", self._cmd_chat))
        self._app.add_handler(CommandHandler("caption", self._cmd_caption))
        self._app.add_handler(CommandHandler("status", self._cmd_status))
        self._app.add_handler(CommandHandler("quota", self._cmd_quota))
        self._app.add_handler(CommandHandler("reset", self._cmd_reset))
        self._app.add_handler(
            MessageHandler(filters.TEXT & ~filters.COMMAND, self._handle_text)
        )
        self._app.add_handler(
            MessageHandler(~filters.TEXT & ~filters.COMMAND, self._handle_unsupported)
        )
        self._app.add_error_handler(self._on_error)

    async def _reply_text(self, update: Update, text: str) -> None:
        if update.effective_message is None:
            return
        for chunk in split_message(text):
            await update.effective_message.reply_text(chunk)

    async def _send_typing(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if update.effective_chat is None:
            return
        await context.bot.send_chat_action(chat_id=update.effective_chat.id, action=ChatAction.TYPING)

    def _help_text(self) -> str:
        return (
            "📱 COMMANDS:\n"
            "/chat [message] - Talk with AI\n"
            "/caption [video name] - Generate caption\n"
            "/status - Check your stats\n"
            "/quota - Daily AI quota\n"
            "/reset - Forget this conversation\n\n"
            "Just send me any message to start!"
        )

    async def _cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat_id = update.effective_chat.id
        user = update.effective_user
        user_id = user.id if user else chat_id
        name = (user.first_name if user else None) or "there"
        if self._chat.start_chat(chat_id, user_id):
            logger.info("First contact from chat %s", chat_id)
        msg = f"🤖 Hi {name}! I'm {self._profile.display_name}\n\n" + self._help_text()
        await self._reply_text(update, msg)

    async def _cmd_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._reply_text(update, self._help_text())

    async def _converse(self, update: Update, context: ContextTypes.DEFAULT_TYPE, text: str) -> None:
        chat_id = update.effective_chat.id
        user_id = update.effective_user.id if update.effective_user else chat_id
        await self._send_typing(update, context)
        reply = await self._chat.reply(chat_id, user_id, text)
        await self._reply_text(update, reply.text)

    async def _cmd_chat(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        text = _command_argument(update)
        if not text:
            await self._reply_text(update, "Usage: /chat <message>")
            return
        await self._converse(update, context, text)

    async def _handle_text(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        text = (update.effective_message.text or "").strip()
        if not text:
            return
        await self._converse(update, context, text)

    async def _cmd_caption(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        video_name = _command_argument(update)
        if not video_name:
            await self._reply_text(update, "Usage: /caption <video name>")
            return
        user_id = update.effective_user.id if update.effective_user else update.effective_chat.id
        await self._send_typing(update, context)
        reply = await self._chat.caption(user_id, video_name)
        await self._reply_text(update, f"📝 Generated Caption:\n\n{reply.text}")

    async def _cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        chat_id = update.effective_chat.id
        user_id = update.effective_user.id if update.effective_user else chat_id
        await self._reply_text(update, format_user_stats(self._chat.user_stats(chat_id, user_id)))

    async def _cmd_quota(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        status = self._chat.quota_status()
        msg = (
            f"{status.tier.indicator} AI quota ({status.tier.value})\n"
            f"Used: {status.used}/{status.limit} ({status.percentage}%)\n"
            f"Remaining: {status.remaining}"
        )
        await self._reply_text(update, msg)

    async def _cmd_reset(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        self._chat.reset(update.effective_chat.id)
        await self._reply_text(update, "🧹 Conversation cleared.")

    async def _handle_unsupported(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._reply_text(update, "Unsupported message type. Send text or /help.")

    async def _on_error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        logger.error("Telegram update failed", exc_info=context.error)
        if isinstance(update, Update) and update.effective_message is not None:
            await update.effective_message.reply_text("Something went wrong. Please try again.")
