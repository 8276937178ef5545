"""CLI entry point for lark-bot."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from lark_bot.ai.factory import ModelClientFactory, mask_secrets, parse_kind
from lark_bot.app import LarkBotApp
from lark_bot.config import AppConfig, load_config
from lark_bot.core.types import ModelKind
from lark_bot.errors import LarkBotError
from lark_bot.log import setup_logging
from lark_bot.messenger.card import build_card, current_time
from lark_bot.messenger.console import ConsoleAdapter
from lark_bot.messenger.models import FanoutMessage

LOCAL_CHAT_ID = "local-chat"


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="lark-bot",
        description="Lark chat-bot backend with streaming LLM replies",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    def _add_config_args(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
        sub.add_argument("-e", "--env", default=".env", help="Path to .env file")

    check_parser = subparsers.add_parser("config-check", help="Validate configuration")
    _add_config_args(check_parser)

    model_parser = subparsers.add_parser("model-info", help="Show the configured model backend")
    _add_config_args(model_parser)

    chat_parser = subparsers.add_parser("chat", help="Chat locally in the terminal")
    _add_config_args(chat_parser)
    chat_parser.add_argument("-k", "--kind", help="Model kind override (primary, rag, workflow, mock)")

    replay_parser = subparsers.add_parser("replay", help="Run a webhook body through the callback path")
    _add_config_args(replay_parser)
    replay_parser.add_argument("event", help="Path to a JSON webhook body")
    replay_parser.add_argument("-k", "--kind", help="Model kind override")

    args = parser.parse_args()

    match args.command:
        case "config-check":
            _check_config(args.config, args.env)
        case "model-info":
            _model_info(args.config, args.env)
        case "chat":
            _chat(args.config, args.env, args.kind)
        case "replay":
            _replay(args.config, args.env, args.event, args.kind)
        case _:
            parser.print_help()


def _load_or_exit(config_path: str, env_path: str) -> AppConfig:
    try:
        return load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Run 'python install.py' first or copy config.example.yaml to config.yaml")
        sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration, including the selected model's required keys."""
    config = _load_or_exit(config_path, env_path)
    try:
        ModelClientFactory(config.models).resolve(config.models.kind)
    except LarkBotError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"Configuration valid: {config_path}")
    print(f"  Model kind : {config.models.kind}")
    print(f"  Storage    : {config.storage.backend}")
    print(f"  Fan-out    : {config.fanout.backend}")
    print(f"  History    : {config.chat.max_retained_messages} messages, quota {config.chat.max_chat_quota}")
    print(f"  Encrypted  : {bool(config.lark.encrypt_key)}")


def _model_info(config_path: str, env_path: str) -> None:
    """Show the resolved model configuration with secrets masked."""
    config = _load_or_exit(config_path, env_path)
    factory = ModelClientFactory(config.models)
    try:
        selected = parse_kind(config.models.kind)
    except LarkBotError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    print("AI Model Configuration")
    print("=" * 50)
    for kind in ModelKind:
        marker = "*" if kind == selected else " "
        print(f"\n {marker} {kind.value}")
        try:
            resolved = factory.resolve(kind)
        except LarkBotError as e:
            print(f"    (unavailable: {e})")
            continue
        for key, value in mask_secrets(resolved).items():
            print(f"    {key:<22}: {value}")
    print()


def _local_config(config: AppConfig, kind: str | None) -> AppConfig:
    update = {
        "storage": config.storage.model_copy(update={"backend": "sqlite"}),
        "fanout": config.fanout.model_copy(update={"backend": "inline"}),
    }
    if kind:
        update["models"] = config.models.model_copy(update={"kind": kind})
    return config.model_copy(update=update)


def _chat(config_path: str, env_path: str, kind: str | None) -> None:
    """Interactive REPL over the console messenger and local SQLite store."""
    config = _local_config(_load_or_exit(config_path, env_path), kind)
    setup_logging(config.log_level, debug=config.debug_mode)

    async def _async_main() -> None:
        console = ConsoleAdapter()
        app = LarkBotApp(config, messenger=console)
        await app.start()
        print(f"Chatting with '{config.models.kind}'. Send '{config.chat.reset_command}' to reset, Ctrl-D to quit.")
        turn = 0
        try:
            while True:
                try:
                    text = await asyncio.to_thread(input, "> ")
                except EOFError:
                    break
                turn += 1
                message_id = f"local-{turn}"
                card = build_card("Pending", current_time(), "...", "", False, True)
                msg_body = await console.reply_card(message_id, card)
                await app.chat.handle(
                    FanoutMessage(
                        msg_type="text",
                        msg=text,
                        open_chat_id=LOCAL_CHAT_ID,
                        message_id=message_id,
                        msg_body=msg_body,
                    )
                )
        finally:
            await app.close()

    try:
        asyncio.run(_async_main())
    except LarkBotError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass


def _replay(config_path: str, env_path: str, event_path: str, kind: str | None) -> None:
    """Feed a saved webhook body through verification, dedupe and the chat path."""
    config = _local_config(_load_or_exit(config_path, env_path), kind)
    setup_logging(config.log_level, debug=config.debug_mode)
    body = Path(event_path).read_text(encoding="utf-8")

    async def _async_main() -> None:
        app = LarkBotApp(config, messenger=ConsoleAdapter())
        await app.start()
        try:
            response = await app.callback.handle(body)
        finally:
            await app.close()
        print(json.dumps({"status_code": response.status_code, "body": response.body}))

    try:
        asyncio.run(_async_main())
    except LarkBotError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
