"""Source record model."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

_TITLE_MAX_CHARS = 50
_TITLE_TRUNCATE_AT = 47


def title_from_transcript(transcript: str) -> str:
    """Derive a title from the first non-empty transcript line."""
    for line in transcript.splitlines():
        line = line.strip()
        if line:
            if len(line) > _TITLE_MAX_CHARS:
                return line[:_TITLE_TRUNCATE_AT] + "..."
            return line
    return "Untitled capture"


@dataclass
class Record:
    """A voice capture: transcript plus optional metadata fields."""

    id: str
    title: str = ""
    transcript: str = ""
    summary: str = ""
    context: str = ""
    tags: list[str] = field(default_factory=list)
    created_at: Optional[datetime] = None

    def indexable_text(self) -> str:
        """All indexable fields joined by newlines, in a fixed order."""
        return "\n".join(
            [self.title, self.summary, self.context, ",".join(self.tags), self.transcript]
        )
