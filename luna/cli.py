"""Luna command-line entry point.

Reads one message per line from stdin and prints each reply.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid

from luna.config import Settings, settings
from luna.errors import LunaError
from luna.llm.orchestrator import Orchestrator
from luna.llm.prompt import PromptComposer
from luna.llm.registry import AdapterRegistry, build_default_registry
from luna.memory.context import MemoryContextAssembler
from luna.memory.store import ConversationStore
from luna.records.context import RecordContextProvider
from luna.records.store import RecordStore
from luna.records.trust import TrustPolicy
from luna.tools import build_tool_registry

logger = logging.getLogger(__name__)


def build_orchestrator(
    config: Settings, registry: AdapterRegistry | None = None
) -> Orchestrator:
    """Wire every service from *config*."""
    conversations = ConversationStore()
    records = RecordContextProvider(
        RecordStore(),
        policy=TrustPolicy(config.get_trusted_models()),
        recent_days=config.record_recent_days,
    )
    assembler = MemoryContextAssembler(
        conversations,
        message_window=config.memory_message_window,
        summary_limit=config.summary_fetch_limit,
        pin_limit=config.pin_fetch_limit,
    )
    return Orchestrator(
        registry or build_default_registry(config),
        PromptComposer(records),
        assembler,
        conversations,
        build_tool_registry(config),
        token_budget=config.memory_token_budget,
        persist_messages=config.persist_messages,
        search_requires_explicit_intent=config.search_requires_explicit_intent,
    )


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="luna", description="Chat with Luna.")
    parser.add_argument("--model", default=settings.default_model, help="model ID or alias")
    parser.add_argument("--persona", default=None, help="persona ID")
    parser.add_argument("--session", default=None, help="session ID (new one if omitted)")
    parser.add_argument("--no-stream", action="store_true", help="print whole replies")
    parser.add_argument("--list-models", action="store_true", help="list models and exit")
    return parser


async def _chat(orchestrator: Orchestrator, args: argparse.Namespace, session_id: str) -> None:
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            break
        text = line.strip()
        if not text:
            continue

        if args.no_stream:
            reply = await orchestrator.run(
                text, args.model, persona_id=args.persona, session_id=session_id
            )
            print(reply.reply, flush=True)
            continue

        async for chunk in orchestrator.run_stream(
            text, args.model, persona_id=args.persona, session_id=session_id
        ):
            print(chunk.delta, end="", flush=True)
        print(flush=True)


def main(argv: list[str] | None = None) -> int:
    args = _parser().parse_args(argv)
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )

    registry = build_default_registry(settings)
    if args.list_models:
        for adapter in registry.list_unique():
            print(f"{adapter.id}\t{adapter.kind}\t{adapter.display_name}")
        return 0

    session_id = args.session or f"cli-{uuid.uuid4().hex[:8]}"
    logger.info("Starting Luna with model %s (session %s)", args.model, session_id)
    orchestrator = build_orchestrator(settings, registry)

    try:
        asyncio.run(_chat(orchestrator, args, session_id))
    except LunaError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
