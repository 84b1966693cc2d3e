"""
Tests for run transcripts, console rendering and the CLI parser.
"""

import base64
import io
import json
from unittest.mock import patch

from rich.console import Console

from agentic_tab.cli import create_parser, main
from agentic_tab.events import CompositeEventChannel, EventChannel, UIEvent
from agentic_tab.logger import ConsoleRenderer, RunLogger, redact_typed_text, slugify


def tool_output(tool: str, tool_input: str, content: str = "ok") -> UIEvent:
    return UIEvent("updateOutput", {"content": {
        "type": "tool", "content": content, "tool": tool, "input": tool_input, "status": "ok",
    }}, 1, 1)


class TestRedaction:
    """Tests for secret redaction."""

    def test_password_input_is_redacted(self):
        assert redact_typed_text("browser_type", "#password|hunter2") == "#password|[REDACTED]"
        assert redact_typed_text("browser_type", "#search|shoes") == "#search|shoes"
        assert redact_typed_text("browser_click", "#password") == "#password"

    def test_slugify(self):
        assert slugify("Find cheap flights to Paris!") == "find_cheap_flights_to_paris"


class TestRunLogger:
    """Tests for the JSONL transcript."""

    def test_writes_events(self, tmp_path):
        run_logger = RunLogger("Log in", runs_dir=tmp_path)

        run_logger.emit(tool_output("browser_type", "#password|hunter2"))
        run_logger.emit(UIEvent("finalizeStreamingSegment", {
            "segmentId": 0,
            "content": "Typing.\n<tool>browser_type</tool><input>#pwd|secret</input>",
        }, 1, 1))

        lines = [json.loads(line) for line in run_logger.events_file.read_text().splitlines()]
        assert lines[0]["action"] == "updateOutput"
        assert lines[0]["content"]["input"] == "#password|[REDACTED]"
        assert "secret" not in lines[1]["content"]
        assert lines[1]["tabId"] == 1
        assert "timestamp" in lines[1]

    def test_saves_screenshots(self, tmp_path):
        run_logger = RunLogger("Look", runs_dir=tmp_path)
        data = base64.b64encode(b"\x89PNG").decode()

        run_logger.emit(UIEvent("updateScreenshot", {"screenshotId": "screenshot_1", "content": data}))

        saved = list(run_logger.screenshots_dir.glob("*.png"))
        assert len(saved) == 1
        assert saved[0].read_bytes() == b"\x89PNG"


class TestConsoleRenderer:
    """Tests for terminal rendering."""

    def make_renderer(self):
        output = io.StringIO()
        return ConsoleRenderer(Console(file=output, width=120)), output

    def test_renders_steps_and_answer_once(self):
        renderer, output = self.make_renderer()

        renderer.emit(tool_output("browser_click", "#next", "Clicked #next"))
        renderer.emit(UIEvent("updateOutput", {"content": {"type": "llm", "content": "All done"}}))
        renderer.emit(UIEvent("finalizeStreamingSegment", {"segmentId": 1, "content": "All done"}))

        text = output.getvalue()
        assert "Step 1" in text
        assert "Clicked #next" in text
        assert text.count("All done") == 1
        assert renderer.steps == 1

    def test_composite_survives_failing_listener(self):
        class Broken(EventChannel):
            def emit(self, event):
                raise RuntimeError("boom")

        renderer, output = self.make_renderer()
        CompositeEventChannel(Broken(), renderer).emit(
            UIEvent("updateOutput", {"content": {"type": "system", "content": "Error: bad key"}})
        )
        assert "Error: bad key" in output.getvalue()


class TestCLI:
    """Tests for argument parsing."""

    def test_run_arguments(self):
        args = create_parser().parse_args([
            "run", "Open example.com", "--provider", "anthropic",
            "--fallback-provider", "openai", "--auto-approve", "--headless",
        ])
        assert args.command == "run"
        assert args.prompt == "Open example.com"
        assert args.provider == "anthropic"
        assert args.fallback_provider == "openai"
        assert args.auto_approve is True
        assert args.headless is True

    def test_ask_arguments(self):
        args = create_parser().parse_args(["ask", "What is CSS?", "--model", "gpt-4o"])
        assert (args.command, args.prompt, args.model) == ("ask", "What is CSS?", "gpt-4o")

    def test_no_command_prints_help(self):
        assert main([]) == 0

    def test_memory_show_empty(self, tmp_path):
        with patch("agentic_tab.memory.get_memory_path", return_value=tmp_path / "memory.json"):
            assert main(["memory", "--show"]) == 0
