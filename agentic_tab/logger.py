"""
Logging and artifact management for Agentic Tab.

Handles logging setup, JSONL event transcripts, screenshot saving and rich
console rendering of UI events.
"""

import base64
import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .config import get_runs_dir
from .events import (
    FALLBACK_STARTED,
    FINALIZE_STREAMING_SEGMENT,
    OUTPUT_LLM,
    OUTPUT_PAGE_CONTEXT,
    OUTPUT_TOOL,
    PROCESSING_COMPLETE,
    RATE_LIMIT,
    REQUEST_APPROVAL,
    UPDATE_OUTPUT,
    UPDATE_SCREENSHOT,
    UPDATE_STREAMING_CHUNK,
    EventChannel,
    UIEvent,
)
from .segmenter import parse_directive, split_directive
from .utils import is_password_field, truncate_text


def setup_logging(debug: bool = False, console: Optional[Console] = None) -> None:
    """Route library logging through rich.

    Args:
        debug: Log at DEBUG instead of WARNING
        console: Console to log to (stderr if None)
    """
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=debug,
        rich_tracebacks=True,
        markup=False,
    )
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def slugify(text: str, max_length: int = 30) -> str:
    """Convert text to a filesystem-safe slug."""
    slug = re.sub(r'[^\w\s-]', '', text.lower())
    slug = re.sub(r'[-\s]+', '_', slug).strip('_')
    return slug[:max_length]


def redact_typed_text(tool_name: str, tool_input: str) -> str:
    """Hide text typed into password-like fields."""
    if tool_name == "browser_type" and "|" in tool_input:
        selector = tool_input.split("|", 1)[0]
        if is_password_field(selector):
            return f"{selector}|[REDACTED]"
    return tool_input


def _redact_directives(text: str) -> str:
    directive = parse_directive(text)
    if directive is None:
        return text
    redacted = redact_typed_text(directive.tool, directive.input)
    if redacted == directive.input:
        return text
    return text.replace(directive.input, redacted)


class RunLogger(EventChannel):
    """Writes the UI events of one run to a JSONL transcript."""

    def __init__(self, goal: str, runs_dir: Optional[Path] = None):
        """Initialize the run logger.

        Args:
            goal: The prompt being executed (used for directory naming)
            runs_dir: Parent directory (defaults to ~/.agentic_tab/runs)
        """
        self.goal = goal
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.run_dir = (runs_dir or get_runs_dir()) / f"{timestamp}_{slugify(goal) or 'run'}"
        self.run_dir.mkdir(parents=True, exist_ok=True)

        self.screenshots_dir = self.run_dir / "screenshots"
        self.screenshots_dir.mkdir(exist_ok=True)

        self.events_file = self.run_dir / "events.jsonl"
        self.events_file.touch()
        self.event_count = 0

    def emit(self, event: UIEvent) -> None:
        self.log_event(event)

    def log_event(self, event: UIEvent) -> None:
        """Append an event to the transcript, redacting secrets."""
        self.event_count += 1
        record = self._sanitize(event.to_dict())

        if event.action == UPDATE_SCREENSHOT and event.payload.get("content"):
            path = self.save_screenshot(
                base64.b64decode(event.payload["content"]),
                event.payload.get("screenshotId"),
            )
            record["content"] = str(path)

        record["timestamp"] = datetime.now().isoformat()
        with open(self.events_file, "a") as f:
            f.write(json.dumps(record) + "\n")

    def _sanitize(self, record: dict[str, Any]) -> dict[str, Any]:
        sanitized = dict(record)
        action = record.get("action")

        if action == REQUEST_APPROVAL:
            sanitized["toolInput"] = redact_typed_text(
                record.get("toolName", ""), record.get("toolInput", "")
            )
        elif action == UPDATE_OUTPUT and isinstance(record.get("content"), dict):
            content = dict(record["content"])
            if content.get("type") == OUTPUT_TOOL:
                content["input"] = redact_typed_text(content.get("tool", ""), content.get("input", ""))
            sanitized["content"] = content
        elif action == FINALIZE_STREAMING_SEGMENT:
            sanitized["content"] = _redact_directives(record.get("content", ""))
        return sanitized

    def save_screenshot(self, image: bytes, label: Optional[str] = None) -> Path:
        """Save a screenshot to the screenshots directory."""
        label_part = f"_{slugify(label)}" if label else ""
        path = self.screenshots_dir / f"event_{self.event_count:04d}{label_part}.png"
        path.write_bytes(image)
        return path


class ConsoleRenderer(EventChannel):
    """Renders UI events to the terminal with rich."""

    RISK_COLORS = {"low": "green", "medium": "yellow", "high": "red"}

    def __init__(self, console: Optional[Console] = None, show_stream: bool = False):
        self.console = console or Console()
        self.show_stream = show_stream
        self.steps = 0
        self.last_answer: Optional[str] = None

    def emit(self, event: UIEvent) -> None:
        action = event.action
        payload = event.payload

        if action == UPDATE_OUTPUT:
            self._render_output(payload.get("content") or {})
        elif action == FINALIZE_STREAMING_SEGMENT:
            self._render_segment(payload.get("content", ""))
        elif action == UPDATE_STREAMING_CHUNK and self.show_stream:
            self.console.print(payload.get("content", ""), end="", markup=False, highlight=False)
        elif action == RATE_LIMIT and payload.get("isRetrying"):
            self.console.print("[yellow]Backend busy, retrying...[/yellow]")
        elif action == FALLBACK_STARTED:
            self.console.print(
                f"[yellow]Switching from {payload.get('from')} to {payload.get('to')}[/yellow]"
            )
        elif action == UPDATE_SCREENSHOT:
            self.console.print(f"  [dim]Screenshot {payload.get('screenshotId')}[/dim]")
        elif action == PROCESSING_COMPLETE:
            self.console.print("[dim]Done.[/dim]")

    def _render_output(self, content: dict[str, Any]) -> None:
        output_type = content.get("type")
        text = content.get("content", "")

        if output_type == OUTPUT_TOOL:
            self.steps += 1
            ok = content.get("status") == "ok"
            mark = "[green]✓[/green]" if ok else "[red]✗[/red]"
            step = Text()
            step.append(f"Step {self.steps}: ", style="bold")
            step.append(content.get("displayName") or content.get("tool", ""), style="bold cyan")
            tool_input = redact_typed_text(content.get("tool", ""), content.get("input", ""))
            if tool_input:
                step.append(f" ({truncate_text(tool_input, 80)})", style="dim")
            self.console.print(step)
            self.console.print(f"  {mark} {truncate_text(text, 300)}")
        elif output_type == OUTPUT_LLM:
            self.last_answer = text.strip()
            self.print_final_answer(text)
        elif output_type == OUTPUT_PAGE_CONTEXT:
            self.console.print(f"[dim]{text}[/dim]")
        elif text.startswith("Error:"):
            self.console.print(f"[bold red]{text}[/bold red]")
        else:
            self.console.print(f"[yellow]{text}[/yellow]")

    def _render_segment(self, content: str) -> None:
        narration, directive = split_directive(content)
        if directive is None:
            if narration != self.last_answer:
                self.last_answer = narration
                self.print_final_answer(narration)
        elif narration:
            self.console.print(f"[dim]{narration}[/dim]")

    def print_header(self, goal: str) -> None:
        self.console.print()
        self.console.print(Panel(
            f"[bold cyan]Goal:[/bold cyan] {goal}",
            title="Agentic Tab",
            border_style="cyan",
        ))
        self.console.print()

    def print_final_answer(self, answer: str) -> None:
        if not answer:
            return
        self.console.print()
        self.console.print(Panel(answer, title="Answer", border_style="green"))

    def print_approval_request(self, payload: dict[str, Any]) -> None:
        risk = payload.get("risk", "medium")
        color = self.RISK_COLORS.get(risk, "white")
        tool_input = redact_typed_text(payload.get("toolName", ""), payload.get("toolInput", ""))
        self.console.print()
        self.console.print(Panel(
            f"[bold]Tool:[/bold] {payload.get('toolName')}\n"
            f"[bold]Input:[/bold] {tool_input}\n"
            f"[bold]Risk:[/bold] [{color}]{risk}[/{color}]\n"
            f"[bold]Reason:[/bold] {payload.get('reason')}",
            title="Approval Required",
            border_style="yellow",
        ))

    def print_summary(self, run_logger: Optional[RunLogger] = None) -> None:
        table = Table(title="Run Summary", show_header=False)
        table.add_column("Property", style="dim")
        table.add_column("Value")
        table.add_row("Tool Steps", str(self.steps))
        if run_logger is not None:
            table.add_row("Events Log", str(run_logger.events_file))
            table.add_row("Screenshots", str(len(list(run_logger.screenshots_dir.glob("*.png")))))
        self.console.print()
        self.console.print(table)
