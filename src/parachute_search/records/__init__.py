"""Source records and the repositories that provide them."""

from .models import Record, title_from_transcript
from .repository import (
    MarkdownRecordRepository,
    RecordRepository,
    parse_record,
    split_frontmatter,
)

__all__ = [
    "Record",
    "RecordRepository",
    "MarkdownRecordRepository",
    "parse_record",
    "split_frontmatter",
    "title_from_transcript",
]
