"""
CLI for Agentic Tab.

Provides the command-line interface using argparse.
"""

import argparse
import asyncio
import sys
from typing import Optional

from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from . import __version__
from .agent import create_browser_agent
from .config import DEFAULTS, EngineConfig
from .events import (
    OUTPUT_SYSTEM,
    PROCESSING_COMPLETE,
    REQUEST_APPROVAL,
    UPDATE_OUTPUT,
    CompositeEventChannel,
    QueueEventChannel,
)
from .logger import ConsoleRenderer, RunLogger, setup_logging
from .memory import MemoryStore
from .orchestrator import Orchestrator
from .providers import Provider
from .types import SessionRef

# The CLI drives a single tab in a single window
CLI_WINDOW_ID = 1
CLI_TAB_ID = 1


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="agentic-tab",
        description="Agentic Tab - drive a browser tab with a streaming LLM agent.",
        epilog="""
Examples:
  # Ask the agent to do something in the browser
  agentic-tab run "Open example.com and tell me the title"

  # Start on a page and use Anthropic with an OpenAI fallback
  agentic-tab run "Summarize this article" --url https://example.com \\
      --provider anthropic --fallback-provider openai

  # Ask a question without a browser
  agentic-tab ask "What is a CSS selector?"
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"Agentic Tab {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")
    providers = [p.value for p in Provider]

    def add_model_arguments(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "--provider",
            choices=providers,
            default=None,
            help=f"LLM provider (default: $AGENTIC_TAB_PROVIDER or {DEFAULTS['provider']})",
        )
        sub.add_argument("--model", type=str, default=None, help="Model name")
        sub.add_argument("--endpoint", type=str, default=None, help="Custom API endpoint")
        sub.add_argument(
            "--fallback-provider",
            choices=providers,
            default=None,
            help="Provider to switch to when the primary is rate limited",
        )
        sub.add_argument("--fallback-model", type=str, default=None, help="Fallback model name")
        sub.add_argument("--debug", action="store_true", help="Enable debug logging")

    run_parser = subparsers.add_parser(
        "run",
        help="Run the browser agent with a prompt",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument("prompt", type=str, help="What to do, in natural language")
    add_model_arguments(run_parser)
    run_parser.add_argument(
        "--auto-approve",
        action="store_true",
        default=DEFAULTS["auto_approve"],
        help="Auto-approve low and medium risk actions (high risk still asks)",
    )
    run_parser.add_argument("--headless", action="store_true", help="Run browser in headless mode")
    run_parser.add_argument("--url", type=str, default=None, help="Page to open first")

    ask_parser = subparsers.add_parser("ask", help="Ask a question without browser automation")
    ask_parser.add_argument("prompt", type=str, help="The question")
    add_model_arguments(ask_parser)

    memory_parser = subparsers.add_parser("memory", help="Manage saved domain memories")
    memory_parser.add_argument("--show", action="store_true", help="Show all memories")
    memory_parser.add_argument("--clear", action="store_true", help="Delete all memories")

    return parser


def _build_config(args: argparse.Namespace) -> EngineConfig:
    return EngineConfig.from_cli_args(
        provider=args.provider,
        model=args.model,
        endpoint=args.endpoint,
        fallback_provider=args.fallback_provider,
        fallback_model=args.fallback_model,
        auto_approve=getattr(args, "auto_approve", False),
        debug=args.debug,
    )


async def _pump_events(
    orchestrator: Orchestrator,
    queue: QueueEventChannel,
    renderer: ConsoleRenderer,
    task: asyncio.Task,
) -> int:
    """Answer approval requests until the run completes.

    Returns:
        Exit code (1 if the run reported an error)
    """
    failed = False
    while True:
        event = await queue.get()

        if event.action == REQUEST_APPROVAL:
            renderer.print_approval_request(event.payload)
            approved = await asyncio.to_thread(
                Confirm.ask, "[yellow]Approve action?[/yellow]", default=False
            )
            orchestrator.approval_response(event.payload["requestId"], approved)

        elif event.action == UPDATE_OUTPUT:
            content = event.payload.get("content") or {}
            if content.get("type") == OUTPUT_SYSTEM and content.get("content", "").startswith("Error:"):
                failed = True

        elif event.action == PROCESSING_COMPLETE:
            await task
            return 1 if failed else 0


async def _run_agent(args: argparse.Namespace, config: EngineConfig, console: Console) -> int:
    from playwright.async_api import async_playwright

    from .tools import PlaywrightAutomation

    renderer = ConsoleRenderer(console)
    run_logger = RunLogger(args.prompt)
    queue = QueueEventChannel()
    events = CompositeEventChannel(renderer, run_logger, queue)

    renderer.print_header(args.prompt)

    async with async_playwright() as playwright:
        browser = await playwright.chromium.launch(headless=args.headless)
        try:
            page = await browser.new_page(viewport={"width": 1280, "height": 800})
            if args.url:
                await page.goto(args.url, wait_until="domcontentloaded")
            automation = PlaywrightAutomation(page)

            async def agent_factory(window_id, provider_config, fallback_config):
                return create_browser_agent(automation, provider_config, fallback_config)

            orchestrator = Orchestrator(events, agent_factory, config=config, memory=MemoryStore())
            orchestrator.sessions.register_tab(CLI_TAB_ID, CLI_WINDOW_ID)
            ref = SessionRef(tab_id=CLI_TAB_ID, window_id=CLI_WINDOW_ID)

            task = orchestrator.submit_prompt(args.prompt, ref)
            try:
                exit_code = await _pump_events(orchestrator, queue, renderer, task)
            finally:
                await orchestrator.close()
        finally:
            await browser.close()

    renderer.print_summary(run_logger)
    return exit_code


async def _run_ask(args: argparse.Namespace, config: EngineConfig, console: Console) -> int:
    renderer = ConsoleRenderer(console)
    queue = QueueEventChannel()
    orchestrator = Orchestrator(CompositeEventChannel(renderer, queue), config=config)
    orchestrator.sessions.register_tab(CLI_TAB_ID, CLI_WINDOW_ID)

    task = orchestrator.submit_prompt(
        args.prompt, SessionRef(tab_id=CLI_TAB_ID, window_id=CLI_WINDOW_ID), ask_mode=True
    )
    try:
        return await _pump_events(orchestrator, queue, renderer, task)
    finally:
        await orchestrator.close()


def run_command(args: argparse.Namespace) -> int:
    """Execute the run or ask command.

    Args:
        args: Parsed command line arguments

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    console = Console()
    config = _build_config(args)
    setup_logging(config.debug)
    config.ensure_directories()

    runner = _run_ask if args.command == "ask" else _run_agent
    try:
        return asyncio.run(runner(args, config, console))
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        return 130
    except Exception as e:
        console.print(f"[bold red]Fatal error: {e}[/bold red]")
        return 1


def memory_command(args: argparse.Namespace) -> int:
    """Show or clear saved domain memories."""
    console = Console()
    store = MemoryStore()

    if args.clear:
        if Confirm.ask("[bold red]Delete ALL stored memories?[/bold red]", default=False):
            store.clear()
            console.print("[green]✓ All memories cleared.[/green]")
            return 0
        console.print("[yellow]Cancelled.[/yellow]")
        return 1

    records = store.all()
    if not records:
        console.print("[dim]No memories stored.[/dim]")
        return 0

    table = Table(title="Domain Memories")
    table.add_column("Domain", style="cyan")
    table.add_column("Task")
    table.add_column("Tools", style="dim")
    table.add_column("Saved", style="dim")
    for record in records:
        table.add_row(
            record.domain,
            record.task_description,
            " -> ".join(record.tool_sequence),
            record.created_at.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point.

    Args:
        argv: Command line arguments (uses sys.argv if None)

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    if args.command in ("run", "ask"):
        return run_command(args)

    if args.command == "memory":
        return memory_command(args)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
