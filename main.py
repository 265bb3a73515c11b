"""
Deliberator: Multi-Responder Deliberation
==========================================
CLI entry point.  Run with::

    python main.py "What causes the Northern Lights?"
    python main.py --providers openai,anthropic "Explain quantum entanglement"
    python main.py --single openai "Summarise the French Revolution"

Environment variables (set the ones for providers you want to use):
    OPENAI_API_KEY
    ANTHROPIC_API_KEY
    GOOGLE_API_KEY
    OLLAMA_BASE_URL  (default: http://localhost:11434)
    DELIBERATOR_*    pipeline tuning, see deliberator/config.py
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import sys
import textwrap

from dotenv import load_dotenv

load_dotenv()  # Load .env file if present

from deliberator.config import Settings
from deliberator.direct_handler import DirectQueryHandler
from deliberator.errors import DeliberationError
from deliberator.observer import LoggingObserver, EventType, event_bus
from deliberator.orchestrator import DeliberationOrchestrator
from deliberator.providers import ProviderFactory
from deliberator.providers.ollama_provider import OllamaProvider
from deliberator.query_router import QueryRouter
from deliberator.registry import ModelRegistry
from deliberator.schemas import Query, QueryMode, SessionResult
from deliberator.session_store import InMemorySessionStore, SqliteSessionStore


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Deliberator: ask several AI models, let them debate, get one answer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            Examples:
              python main.py "What is photosynthesis?"
              python main.py --providers openai,anthropic "Explain gravity"
              python main.py --ollama-model mistral --ollama-model phi3 "Compare ML frameworks"
              python main.py --single anthropic "Is P=NP?"
              python main.py --max-rounds 2 "How do vaccines work?"
        """),
    )
    parser.add_argument("query", help="The question to deliberate on.")
    parser.add_argument(
        "--providers",
        type=str,
        default=None,
        help=(
            "Comma-separated provider names (default: every hosted provider with "
            "credentials). Use 'ollama:modelname' to target a local model."
        ),
    )
    parser.add_argument(
        "--ollama-model",
        type=str,
        action="append",
        default=None,
        dest="ollama_models",
        help="Add a local Ollama model to the pool. Can be repeated.",
    )
    parser.add_argument(
        "--single",
        type=str,
        default=None,
        metavar="MODEL",
        help="Skip deliberation and ask only this responder id.",
    )
    parser.add_argument(
        "--max-rounds",
        type=int,
        default=None,
        help="Upper bound on debate rounds (1-5).",
    )
    parser.add_argument(
        "--user",
        type=str,
        default="cli",
        help="User id recorded on the session (default: cli).",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable DEBUG logging.",
    )
    return parser.parse_args(argv)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )


def _apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    if args.max_rounds is not None:
        debate = dataclasses.replace(
            settings.debate,
            max_rounds=args.max_rounds,
            min_rounds=min(settings.debate.min_rounds, args.max_rounds),
        )
        settings = dataclasses.replace(settings, debate=debate)
    return settings


def _print_result(result: SessionResult) -> None:
    sep = "=" * 72
    session = result.session
    print(f"\n{sep}")
    print("  DELIBERATOR: FINAL ANSWER")
    print(sep)
    print(f"\n{result.result}\n")
    print(sep)
    print(f"  Session   : {result.session_id}")
    print(f"  Mode      : {session.mode.value}")
    if session.consensus is not None:
        consensus = session.consensus
        print(f"  Agreement : {consensus.agreement_level:.2f}")
        print(f"  Confidence: {consensus.final_solution.confidence:.2f}")
        print(f"  Supporters: {', '.join(consensus.final_solution.supporting_models)}")
        print(f"  Rationale :")
        for line in textwrap.wrap(consensus.rationale, width=66):
            print(f"    {line}")
    if session.debate is not None:
        print(f"  Rounds    : {len(session.debate.rounds)} "
              f"(convergence {session.debate.convergence_score:.2f})")
    if session.errors:
        print("  Failures  :")
        for failure in session.errors:
            print(f"    • {failure.model_id}: {failure.error}")
    print(sep)


async def _main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    _configure_logging(args.verbose)
    event_bus.subscribe(EventType.CIRCUIT_STATE, LoggingObserver())

    try:
        settings = _apply_overrides(Settings.from_env(), args)
    except ValueError as exc:
        print(f"ERROR: invalid configuration: {exc}", file=sys.stderr)
        return 2

    # Build provider list
    if args.providers:
        names = [n.strip() for n in args.providers.split(",") if n.strip()]
        try:
            providers = ProviderFactory.create_many(names)
        except KeyError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 2
    else:
        providers = await ProviderFactory.create_available()

    for tag in args.ollama_models or []:
        if tag.strip():
            providers.append(OllamaProvider(model=tag.strip()))

    if not providers:
        print(
            "ERROR: No providers available. Set API keys and/or start Ollama.",
            file=sys.stderr,
        )
        return 1

    registry = ModelRegistry()
    for provider in providers:
        provider.configure_resilience(settings.resilience)
        try:
            registry.register(provider)
        except ValueError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 2

    store = (
        SqliteSessionStore(settings.session_db)
        if settings.session_db
        else InMemorySessionStore()
    )
    router = QueryRouter(
        registry,
        DirectQueryHandler(store, timeout=settings.collector.timeout),
        DeliberationOrchestrator(store, settings),
        limits=settings.deliberation,
    )

    if args.single:
        mode = QueryMode.SINGLE
        query = Query.create(args.query, args.user, [args.single])
    else:
        mode = QueryMode.MULTI
        query = Query.create(args.query, args.user)

    print(f"Running deliberator ({mode.value}) with responders: {[p.name for p in providers]}")
    print(f"Query: {args.query}\n")

    try:
        result = await router.route(query, mode)
    except DeliberationError as exc:
        print(f"ERROR: {type(exc).__name__}: {exc}", file=sys.stderr)
        return 1

    _print_result(result)
    return 0


def run() -> None:
    sys.exit(asyncio.run(_main()))


if __name__ == "__main__":
    run()
