"""
Streaming segmenter for Agentic Tab.

Accumulates streamed model text and splits it into ordered segments,
separating prose from embedded tool directives of the form::

    <tool>NAME</tool>
    <input>PAYLOAD</input>
    <requires_approval>true|false</requires_approval>   (optional)

The segmenter never executes anything. It only tells the orchestrator when a
directive is complete so the segment can be finalized early.
"""

import re
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import SegmentOrderError

DIRECTIVE_PATTERN = re.compile(
    r"<tool>(.*?)</tool>\s*<input>([\s\S]*?)</input>"
    r"(?:\s*<requires_approval>(.*?)</requires_approval>)?"
)

APPROVAL_OPEN_TAG = "<requires_approval>"


class Directive(BaseModel):
    """A tool invocation parsed from model output."""

    model_config = ConfigDict(frozen=True)

    tool: str = Field(description="Tool name")
    input: str = Field(default="", description="String-encoded tool input")
    requires_approval: bool = Field(
        default=False,
        description="Whether the model asked for human approval",
    )
    start: int = Field(default=0, ge=0, description="Offset of the match in the text")
    end: int = Field(default=0, ge=0, description="Offset just past the match")

    @field_validator("tool")
    @classmethod
    def validate_tool(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Tool name cannot be empty")
        return v


def parse_directive(text: str) -> Optional[Directive]:
    """Find the first tool directive in text.

    Args:
        text: Model output

    Returns:
        The parsed directive, or None if the text holds no complete directive
    """
    for match in DIRECTIVE_PATTERN.finditer(text):
        tool_name, tool_input, approval = match.groups()
        if not tool_name.strip():
            continue
        return Directive(
            tool=tool_name,
            input=tool_input.strip(),
            requires_approval=(approval or "").strip().lower() == "true",
            start=match.start(),
            end=match.end(),
        )
    return None


def contains_directive(text: str) -> bool:
    return parse_directive(text) is not None


def split_directive(content: str) -> tuple[str, Optional[Directive]]:
    """Split segment content into its narration and directive (if any)."""
    directive = parse_directive(content)
    if directive is None:
        return content.strip(), None
    return content[:directive.start].strip(), directive


@dataclass(frozen=True)
class Segment:
    """A finalized, immutable span of one run's output."""
    id: int
    content: str
    directive: Optional[Directive] = None

    @property
    def is_directive(self) -> bool:
        return self.directive is not None

    @property
    def narration(self) -> str:
        """Prose preceding the directive (the whole content for prose segments)."""
        if self.directive is None:
            return self.content.strip()
        return split_directive(self.content)[0]


class StreamingSegmenter:
    """Segment state of one streaming run.

    Segment ids start at 0 and grow by one. A segment can only be finalized
    under the current id, so ids are finalized in order and without gaps.

    A ``prose_only`` segmenter never reports directives. Everything it is fed
    is finalized as prose on completion.
    """

    def __init__(self, prose_only: bool = False) -> None:
        self.prose_only = prose_only
        self.segment_id = 0
        self.buffer = ""
        self.completed = False
        self.segments: list[Segment] = []

    def feed(self, delta: str) -> None:
        """Append a streamed text delta to the buffer."""
        if self.completed:
            return
        self.buffer += delta

    def current_buffer(self) -> str:
        return self.buffer

    def take_directive(self, final: bool = False) -> Optional[Directive]:
        """Return the buffered directive once it can no longer change.

        A directive is settled when the text after it rules out a trailing
        ``<requires_approval>`` tag, or when the stream has ended (``final``).
        """
        if self.prose_only:
            return None
        directive = parse_directive(self.buffer)
        if directive is None:
            return None
        if final or APPROVAL_OPEN_TAG in self.buffer[directive.start:directive.end]:
            return directive

        rest = self.buffer[directive.end:].lstrip()
        if APPROVAL_OPEN_TAG.startswith(rest) or rest.startswith(APPROVAL_OPEN_TAG):
            return None
        return directive

    def finalize_segment(self, segment_id: int, content: str) -> Segment:
        """Finalize the current segment and clear the buffer.

        Raises:
            SegmentOrderError: If ``segment_id`` is not the current segment
        """
        if segment_id != self.segment_id:
            raise SegmentOrderError(
                f"Cannot finalize segment {segment_id}; current segment is {self.segment_id}"
            )
        if self.segments and self.segments[-1].id >= segment_id:
            raise SegmentOrderError(f"Segment {segment_id} is already finalized")

        directive = None if self.prose_only else parse_directive(content)
        segment = Segment(id=segment_id, content=content, directive=directive)
        self.segments.append(segment)
        self.buffer = ""
        return segment

    def start_new_segment(self, segment_id: int) -> None:
        """Open the segment that follows the last finalized one.

        Raises:
            SegmentOrderError: If ``segment_id`` would leave a gap
        """
        expected = self.segments[-1].id + 1 if self.segments else 0
        if segment_id != expected:
            raise SegmentOrderError(
                f"Cannot start segment {segment_id}; next segment is {expected}"
            )
        self.segment_id = segment_id
        self.buffer = ""

    def complete(self) -> Optional[Segment]:
        """End the run, finalizing leftover prose exactly once.

        Returns:
            The trailing prose segment, or None when the buffer was empty,
            held an undispatched directive, or the run was already complete
        """
        if self.completed:
            return None

        trailing = None
        if self.buffer.strip() and (self.prose_only or not contains_directive(self.buffer)):
            if self.segments and self.segments[-1].id >= self.segment_id:
                self.segment_id = self.segments[-1].id + 1
            trailing = self.finalize_segment(self.segment_id, self.buffer)
        self.buffer = ""
        self.completed = True
        return trailing
