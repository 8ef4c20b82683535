"""CLI entry point for parley."""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from datetime import datetime

from parley.ai.providers.cli import CliProviderSession
from parley.ai.providers.openai_chat import ChatCompletionsSession
from parley.ai.tools.question import QuestionTool
from parley.app import ParleyApp
from parley.channels.interactive import StdinReader, terminal_question_callback
from parley.config import AppConfig, AzureOpenAIProviderConfig, CliProviderConfig, load_config
from parley.log import setup_logging
from parley.storage.database import Database
from parley.storage.session_repo import SessionRepository


def _add_config_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-c", "--config", default="config.yaml", help="Path to config file")
    parser.add_argument("-e", "--env", default=".env", help="Path to .env file")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="parley",
        description="Multi-provider AI chat sessions shared between a terminal and a bot channel",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # chat command
    chat_parser = subparsers.add_parser("chat", help="Start the interactive chat")
    _add_config_args(chat_parser)

    # ask command
    ask_parser = subparsers.add_parser("ask", help="Send one prompt and print the streamed reply")
    ask_parser.add_argument("prompt", nargs="+", help="Prompt text")
    _add_config_args(ask_parser)

    # config-check command
    check_parser = subparsers.add_parser("config-check", help="Validate configuration")
    _add_config_args(check_parser)

    # model-info command
    model_parser = subparsers.add_parser("model-info", help="Show provider and model info")
    _add_config_args(model_parser)

    # sessions command
    sessions_parser = subparsers.add_parser("sessions", help="List stored chat sessions")
    sessions_parser.add_argument("-a", "--all", action="store_true", help="Include archived sessions")
    _add_config_args(sessions_parser)

    args = parser.parse_args()

    if args.command is None:
        # Default to chat
        args.command = "chat"
        args.config = "config.yaml"
        args.env = ".env"

    match args.command:
        case "config-check":
            _check_config(args.config, args.env)
        case "model-info":
            _model_info(_load(args.config, args.env))
        case "sessions":
            _sessions(_load(args.config, args.env), args.all)
        case "ask":
            _ask(_load(args.config, args.env), " ".join(args.prompt))
        case "chat":
            _chat(_load(args.config, args.env))


def _load(config_path: str, env_path: str) -> AppConfig:
    try:
        config = load_config(config_path, env_path)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Copy config.example.yaml to config.yaml and adjust it")
        sys.exit(1)
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    setup_logging(config.log_level)
    return config


def _check_config(config_path: str, env_path: str) -> None:
    """Validate configuration and print summary."""
    try:
        config = load_config(config_path, env_path)
        print(f"Configuration valid: {config_path}")
        print(f"  Data directory: {config.data_dir}")
        print(f"  Provider: {config.provider.provider} [{config.provider.model or '-'}]")
        print(f"  Streaming: {config.provider.streaming}")
        print(f"  Max tool rounds: {config.provider.max_tool_rounds}")
        print(f"  Storage: {config.storage.db_path}")
        print(f"  Bot channel: {'enabled' if config.bot.enabled else 'disabled'}")
    except Exception as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)


def _model_info(config: AppConfig) -> None:
    """Show provider configuration and the models it can use."""
    provider_cfg = config.provider
    print("AI Provider Configuration")
    print("=" * 50)
    print(f"  Provider : {provider_cfg.provider}")
    match provider_cfg:
        case CliProviderConfig():
            print(f"  Model    : {provider_cfg.model}")
            print(f"  CLI      : {provider_cfg.cli_path}")
            print(f"  Idle     : {provider_cfg.stale_threshold:.0f}s stale / {provider_cfg.idle_timeout:.0f}s backend")
            if provider_cfg.allowed_tools:
                print(f"  CLI Tools: {', '.join(provider_cfg.allowed_tools)}")
        case AzureOpenAIProviderConfig():
            print(f"  Endpoint : {provider_cfg.endpoint}")
            print(f"  Deploy   : {provider_cfg.deployment_name}")
            print(f"  API ver  : {provider_cfg.api_version}")
        case _:
            print(f"  Model    : {provider_cfg.model}")
            if provider_cfg.base_url:
                print(f"  Base URL : {provider_cfg.base_url}")
    print(f"  Timeout  : {provider_cfg.request_timeout:.0f}s")

    async def _probe() -> None:
        app = ParleyApp(config)
        provider = app.provider
        if not isinstance(provider, (CliProviderSession, ChatCompletionsSession)):
            return
        try:
            if isinstance(provider, CliProviderSession):
                installed, version = await provider.backend.check_installed()
                print(f"  Installed: {version if installed else 'no'}")
                models = await provider.list_models()
            else:
                await provider.initialize()
                ok, error = await provider.test_connection()
                print(f"  Connected: {'yes' if ok else f'no ({error})'}")
                models = await provider.list_models() if ok else []
        except Exception as e:
            print(f"  Error    : {e}", file=sys.stderr)
            return
        finally:
            await provider.destroy()
        print(f"  Models   : {', '.join(models) if models else '(none)'}")

    asyncio.run(_probe())
    print()


def _sessions(config: AppConfig, include_archived: bool) -> None:
    """List stored sessions, newest first."""

    async def _list() -> None:
        db = Database(config.storage.db_path)
        await db.initialize()
        try:
            repo = SessionRepository(db)
            active_id = await repo.get_active_id()
            records = await repo.list_sessions(include_archived=include_archived)
        finally:
            await db.close()

        if not records:
            print("No sessions.")
            return
        for record in records:
            marker = "*" if record.id == active_id else " "
            used = record.last_used_at.astimezone().strftime("%Y-%m-%d %H:%M")
            flags = " [archived]" if record.archived else ""
            conversation = f" conv={record.conversation_id[:12]}" if record.conversation_id else ""
            print(f"{marker} {record.name:<24} {len(record.messages):>4} msgs  {used}{conversation}{flags}")

    asyncio.run(_list())


def _ask(config: AppConfig, prompt: str) -> None:
    """Send one prompt through the active session and print the reply."""

    async def _async_main() -> None:
        app = ParleyApp(config)
        await app.start()
        try:
            await app.interactive().ask(prompt)
        finally:
            await app.stop()

    try:
        asyncio.run(_async_main())
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def _chat(config: AppConfig) -> None:
    """Run the interactive REPL until /quit, end of input, or a second Ctrl-C."""

    def _write(text: str) -> None:
        sys.stdout.write(text)
        sys.stdout.flush()

    async def _async_main() -> None:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()
        reader = StdinReader()
        tools = [QuestionTool(terminal_question_callback(reader.readline, _write))]

        app = ParleyApp(config, tools=tools)
        await app.start()
        channel = app.interactive()
        if app.reconciler is not None:
            app.provider.set_reconnect_callback(
                lambda: _write(f"\n[reconnected at {datetime.now():%H:%M}]\n")
            )

        pending_aborts: set[asyncio.Task] = set()

        def _signal_handler() -> None:
            # Ctrl-C cancels the reply in progress; otherwise it quits.
            if channel.busy:
                task = loop.create_task(app.provider.abort())
                pending_aborts.add(task)
                task.add_done_callback(pending_aborts.discard)
            else:
                stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _signal_handler)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(_signal_handler))

        try:
            await channel.run(reader.readline, stop_event)
        finally:
            await app.stop()

    asyncio.run(_async_main())


if __name__ == "__main__":
    main()
