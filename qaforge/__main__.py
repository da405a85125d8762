"""
Entry point for running qaforge as a module.

Usage:
    python -m qaforge serve [--host H] [--port P]       # Run the backend
    python -m qaforge ask "question" [--ticket ID]      # One-shot analysis
    python -m qaforge events TICKET_ID [--limit N]      # Show stored events
"""

import argparse
import asyncio
import contextlib
import uuid
from pathlib import Path

from qaforge.config import ServerConfig
from qaforge.output import (
    console,
    create_table,
    print_error,
    print_info,
    print_muted,
    print_panel,
    print_table,
    set_verbose,
    setup_rich_logging,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="qaforge",
        description="Ask questions about a codebase through an AI coding CLI",
    )
    parser.add_argument("--db", type=Path, default=None, help="SQLite database path")
    parser.add_argument("--verbose", "-v", action="store_true", help="Echo every agent line")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the REST/WebSocket backend")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.add_argument("--agent", default=None, help="claude, gemini or cursor")

    ask = subparsers.add_parser("ask", help="Run one analysis and print the result")
    ask.add_argument("question")
    ask.add_argument("--ticket", default=None, help="Ticket id (a new one is generated if omitted)")
    ask.add_argument("--mode", default="ask", choices=["plan", "ask", "edit"])
    ask.add_argument("--project-dir", type=Path, default=None, help="Directory the agent works in")
    ask.add_argument("--context", default="", help="Code location to focus on")
    ask.add_argument("--agent", default=None, help="claude, gemini or cursor")

    events = subparsers.add_parser("events", help="List the stored events of a ticket")
    events.add_argument("ticket")
    events.add_argument("--limit", type=int, default=100)
    events.add_argument("--offset", type=int, default=0)

    return parser


def load_config(args: argparse.Namespace) -> ServerConfig:
    config = ServerConfig.load()
    if args.db is not None:
        config.database_path = args.db
    if args.verbose:
        config.verbose = True
    if getattr(args, "agent", None):
        config.agent_type = args.agent
    set_verbose(config.verbose)
    return config


def cmd_serve(args: argparse.Namespace, config: ServerConfig) -> None:
    import uvicorn
    from qaforge.web.backend.main import create_app

    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port

    setup_rich_logging()
    print_info(f"Starting QA Forge backend on http://{config.host}:{config.port}")
    uvicorn.run(create_app(config), host=config.host, port=config.port, log_config=None)


async def _print_events(subscription) -> None:
    async for event in subscription:
        kind = event.kind.value
        console.print(f"[{kind}] {event.content}", style=f"qa.kind.{kind}", markup=False)


async def run_ask(args: argparse.Namespace, config: ServerConfig) -> bool:
    from qaforge.agents.providers import create_agent_from_env
    from qaforge.db.connection import init_db, close_db
    from qaforge.db.repository import Database
    from qaforge.message_store import MessageStore
    from qaforge.orchestrator import AnalysisOrchestrator, AnalysisRequest

    agent = create_agent_from_env(config.agent_type)
    if args.project_dir is not None:
        agent.config.working_dir = args.project_dir

    database = Database(await init_db(config.database_path))
    store = MessageStore(database, batch_size=config.batch_size, flush_interval=config.flush_interval)
    store.start()
    orchestrator = AnalysisOrchestrator(database, store, agent)

    ticket_id = args.ticket or str(uuid.uuid4())
    subscription = store.subscribe(ticket_id)
    printer = asyncio.create_task(_print_events(subscription))
    try:
        response = await orchestrator.analyze(AnalysisRequest(
            subject_id=ticket_id,
            question=args.question,
            mode=args.mode,
            code_context=args.context,
        ))
    finally:
        subscription.close()
        await printer
        await store.stop()
        await close_db()

    title = f"Ticket {ticket_id}"
    print_panel(response.result, title=title, style="qa.ok" if response.success else "qa.err")
    return response.success


async def run_events(args: argparse.Namespace, config: ServerConfig) -> None:
    from qaforge.db.connection import init_db, close_db
    from qaforge.db.repository import Database

    database = Database(await init_db(config.database_path))
    try:
        events = await database.query_events(args.ticket, limit=args.limit, offset=args.offset)
        total = await database.count_events(args.ticket)
    finally:
        await close_db()

    if not events:
        print_muted(f"No events stored for ticket {args.ticket}")
        return

    table = create_table(["Time", "Kind", "Content"], title=f"Events for {args.ticket} ({total} total)")
    for event in events:
        kind = event.kind.value
        content = event.content if len(event.content) <= 120 else event.content[:117] + "..."
        table.add_row(
            f"[qa.timestamp]{event.occurred_at.strftime('%Y-%m-%d %H:%M:%S')}[/]",
            f"[qa.kind.{kind}]{kind}[/]",
            content.replace("[", "\\["),
        )
    print_table(table)


def main():
    """Main entry point with subcommand support."""
    parser = build_parser()
    args = parser.parse_args()
    config = load_config(args)

    if args.command == "serve":
        cmd_serve(args, config)
    elif args.command == "ask":
        with contextlib.suppress(KeyboardInterrupt):
            ok = asyncio.run(run_ask(args, config))
            if not ok:
                print_error("Analysis failed")
                raise SystemExit(1)
    elif args.command == "events":
        asyncio.run(run_events(args, config))


if __name__ == "__main__":
    main()
