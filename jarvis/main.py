"""Jarvis - conversational assistant client.

Entry point for the application.
Usage:
    python -m jarvis.main                       # Start CLI mode (local SQLite history)
    python -m jarvis.main --init                # Initialize default config
    python -m jarvis.main --remote              # Use the remote chat backend
    python -m jarvis.main --chat <id>           # Open an existing chat on startup
    python -m jarvis.main --voice               # Enable wake-word voice input
"""

from __future__ import annotations

import argparse
import asyncio
import importlib
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import structlog

from jarvis.config import (
    JarvisConfig,
    VoiceConfig,
    get_jarvis_home,
    load_config,
    save_default_config,
)
from jarvis.core.memory.summarizer import Summarizer
from jarvis.core.orchestrator import ChatOrchestrator
from jarvis.tools.web_search import WebSearch
from jarvis.voice.controller import VoiceController

logger = structlog.get_logger()

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def setup_logging(level: str = "info") -> None:
    """Configure structured logging."""
    log_dir = get_jarvis_home() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if sys.stderr.isatty() else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            _LOG_LEVELS.get(level.lower(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def ensure_jarvis_home() -> Path:
    """Ensure the ~/.jarvis directory structure exists."""
    home = get_jarvis_home()
    for d in (home, home / "logs", home / "history"):
        d.mkdir(parents=True, exist_ok=True)
    return home


def _load_env() -> None:
    """Load .env files from project root and ~/.jarvis/."""
    env_file = Path(".env")
    if env_file.exists():
        from dotenv import load_dotenv
        load_dotenv(env_file)

    jarvis_env = get_jarvis_home() / ".env"
    if jarvis_env.exists():
        from dotenv import load_dotenv
        load_dotenv(jarvis_env)


def _on_auth_failure() -> None:
    from jarvis.ui.cli import console

    console.print("[red]Your session has expired. Please log in again.[/red]")


def build_orchestrator(config: JarvisConfig) -> ChatOrchestrator:
    """Build the chat orchestrator with its persistence and model collaborators.

    Local mode keeps history in SQLite and talks to models through LiteLLM;
    remote mode routes both through the chat backend's REST API.
    """
    _load_env()

    if config.backend.mode == "remote":
        from jarvis.client.auth import AuthSession
        from jarvis.client.backend import BackendClient

        auth = AuthSession(
            config.backend.base_url,
            token=config.backend.get_token(),
            on_auth_failure=_on_auth_failure,
            timeout=config.backend.timeout,
        )
        backend = BackendClient(auth)
        store = backend
        model = backend
        user_id = config.backend.user_id
    else:
        from jarvis.core.memory.history import ConversationHistory
        from jarvis.core.model_router import ModelRouter

        store = ConversationHistory(
            db_path=config.backend.db_path, user_id=config.backend.user_id,
        )
        model = ModelRouter(config)
        user_id = config.backend.user_id

    summarizer = Summarizer(model, config=config.context, models=config.models)
    search = WebSearch(config.search)

    logger.info("orchestrator_built", backend=config.backend.mode, model=config.models.default)
    return ChatOrchestrator(
        store=store,
        model=model,
        summarizer=summarizer,
        search=search,
        config=config,
        user_id=user_id,
    )


def _load_engine(path: str, config: VoiceConfig) -> Any:
    """Instantiate a voice engine from a "module:factory" path."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Engine path must look like 'module:factory', got {path!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory(config)


def build_voice(
    orchestrator: ChatOrchestrator,
    config: JarvisConfig,
    send_message: Callable[[str], Awaitable[Any]] | None = None,
    wake: Any = None,
    speech: Any = None,
) -> VoiceController | None:
    """Build the voice controller when voice input is enabled.

    Engines are taken from the arguments or loaded from the configured
    factory paths; loaded engines get the controller through bind() so
    they can deliver detections and transcripts. Returns None when voice
    is disabled or an engine is unavailable.
    """
    voice_cfg = config.voice
    if not voice_cfg.enabled:
        return None

    loaded = []
    try:
        if wake is None and voice_cfg.wake_engine:
            wake = _load_engine(voice_cfg.wake_engine, voice_cfg)
            loaded.append(wake)
        if speech is None and voice_cfg.speech_engine:
            speech = _load_engine(voice_cfg.speech_engine, voice_cfg)
            loaded.append(speech)
    except Exception as e:
        logger.warning("voice_engine_load_failed", error=str(e))
        return None
    if wake is None or speech is None:
        logger.warning("voice_engines_missing", wake=wake is not None, speech=speech is not None)
        return None

    voice = VoiceController(
        wake,
        speech,
        send_message or orchestrator.send_message,
        is_busy=lambda: orchestrator.session.is_busy,
        config=voice_cfg,
    )
    for engine in loaded:
        bind = getattr(engine, "bind", None)
        if callable(bind):
            bind(voice)
    logger.info("voice_built", keyword=voice_cfg.keyword_label)
    return voice


async def async_main(config: JarvisConfig, chat_id: str | None = None) -> None:
    from jarvis.ui.cli import CLI

    orchestrator = build_orchestrator(config)
    cli = CLI(orchestrator, config)
    voice = build_voice(orchestrator, config, send_message=cli.send_voice_message)
    cli.voice = voice
    try:
        if voice is not None:
            await voice.init()
            await voice.start()
        if chat_id:
            await orchestrator.select_conversation(chat_id)
        await cli.run()
    finally:
        if voice is not None:
            await voice.release()
        await orchestrator.store.close()


def main() -> None:
    """Parse arguments and start the application."""
    parser = argparse.ArgumentParser(
        description="Jarvis - conversational assistant client",
    )
    parser.add_argument(
        "--init",
        action="store_true",
        help="Initialize default configuration file",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config file (default: ~/.jarvis/config.yaml)",
    )
    parser.add_argument(
        "--chat",
        type=str,
        default=None,
        help="Open an existing chat by id",
    )
    parser.add_argument(
        "--remote",
        action="store_true",
        help="Use the remote chat backend instead of local storage",
    )
    parser.add_argument(
        "--voice",
        action="store_true",
        help="Enable wake-word voice input (needs engines in the voice config)",
    )
    args = parser.parse_args()

    ensure_jarvis_home()

    if args.init:
        setup_logging()
        config_path = save_default_config(
            Path(args.config) if args.config else None
        )
        print(f"Default config saved to: {config_path}")
        return

    # Load config
    config_path = Path(args.config) if args.config else None
    config = load_config(config_path)
    if args.remote:
        config.backend.mode = "remote"
    if args.voice:
        config.voice.enabled = True
    setup_logging(config.logging.level)

    try:
        asyncio.run(async_main(config, chat_id=args.chat))
    except KeyboardInterrupt:
        print("\nGoodbye!")


if __name__ == "__main__":
    main()
