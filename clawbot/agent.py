"""Clawbot runtime entry point."""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

from clawbot.chat_service import ChatService
from clawbot.health.server import HealthServer
from clawbot.llm import GeminiClient, read_secret
from clawbot.memory.conversation_store import ConversationStore
from clawbot.memory.persistence import FlushScheduler, PersistenceGateway
from clawbot.profile import ensure_profile_directories, load_profile
from clawbot.quota import QuotaTracker
from clawbot.telegram_bot import TelegramBot, load_token

logger = logging.getLogger(__name__)

API_KEY_SECRET_FILE = "gemini_api_key.txt"
API_KEY_ENV_VAR = "GEMINI_API_KEY"
LOG_FILE_NAME = "clawbot.log"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run the Clawbot Telegram runtime")
    parser.add_argument("--profile", default="default", help="Profile name, e.g. default")
    parser.add_argument(
        "--repo-root",
        default=None,
        help="Optional repo root override for config loading",
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level, e.g. DEBUG")
    return parser


def load_api_key(secrets_dir: Path) -> str | None:
    key = read_secret(secrets_dir, API_KEY_SECRET_FILE)
    if key:
        return key
    raw = os.getenv(API_KEY_ENV_VAR, "").strip()
    return raw if raw else None


def attach_file_logging(logs_dir: Path) -> logging.Handler:
    """Mirror the root logger into the profile's logs directory."""
    handler = logging.FileHandler(logs_dir / LOG_FILE_NAME, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)
    return handler


def main() -> int:
    args = build_parser().parse_args()
    logging.basicConfig(
        format=LOG_FORMAT,
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
    )
    # httpx logs every Telegram long-poll request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)

    repo_root = Path(args.repo_root).resolve() if args.repo_root else None
    profile = load_profile(args.profile, repo_root=repo_root)
    ensure_profile_directories(profile)
    attach_file_logging(profile.paths.logs_dir)

    token = load_token(profile)
    api_key = load_api_key(profile.paths.secrets_dir)
    if token is None or api_key is None:
        logger.error(
            "Missing required secrets: set %s and %s (or files in %s)",
            "TELEGRAM_BOT_TOKEN",
            API_KEY_ENV_VAR,
            profile.paths.secrets_dir,
        )
        return 1

    conversations = ConversationStore(profile.max_history)
    quota = QuotaTracker(profile.quota)
    gateway = PersistenceGateway(profile.paths.state_path, conversations, quota)
    gateway.restore_into_owners()
    scheduler = FlushScheduler(gateway, profile.persistence_interval_seconds)

    client = GeminiClient(
        api_key,
        model=profile.llm_model,
        temperature=profile.llm_temperature,
        max_output_tokens=profile.llm_max_output_tokens,
        timeout=profile.llm_timeout_seconds,
    )
    chat_service = ChatService(
        conversations,
        quota,
        client.complete,
        context_turns=profile.prompt_context_turns,
        timeout_seconds=profile.llm_timeout_seconds,
    )

    health_server = HealthServer(
        host=profile.health_host,
        port=profile.health_port,
        display_name=profile.display_name,
        conversations=conversations,
        quota=quota,
    )
    health_server.start()
    scheduler.start()
    logger.info(
        "%s running on port %d with %s (history cap %d, daily limit %d)",
        profile.display_name,
        health_server.port,
        profile.llm_model,
        profile.max_history,
        profile.quota.daily_limit,
    )

    telegram_bot = TelegramBot(profile, chat_service)
    try:
        telegram_bot.run(token)
    finally:
        logger.info("Shutting down; writing final state to %s", profile.paths.state_path)
        scheduler.stop(flush=True)
        health_server.stop()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
