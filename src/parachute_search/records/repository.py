"""Record repositories: the source of truth the index is kept in sync with."""

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import yaml

from .models import Record, title_from_transcript

logger = logging.getLogger(__name__)

CAPTURE_TAG = "parachute/capture"
_WIKILINK_LINE_RE = re.compile(r"^\[\[[^\]\n]+\]\]\s*$")


class RecordRepository(ABC):
    """Read-only access to the records being indexed."""

    @abstractmethod
    async def list_all(self) -> list[Record]:
        """Return every record, in a stable order."""

    @abstractmethod
    async def get(self, record_id: str) -> Optional[Record]:
        """Return one record, or None if it does not exist."""


def split_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Split a markdown document into (frontmatter dict, body).

    Malformed frontmatter is logged and the whole document is returned as body.
    """
    lines = content.split("\n")
    if not lines or lines[0].strip() != "---":
        return {}, content

    end_index = -1
    for i in range(1, len(lines)):
        if lines[i].strip() == "---":
            end_index = i
            break
    if end_index < 0:
        return {}, content

    raw = "\n".join(lines[1:end_index])
    body = "\n".join(lines[end_index + 1 :])
    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as e:
        logger.warning(f"Failed to parse frontmatter: {e}")
        return {}, content
    if not isinstance(data, dict):
        logger.warning("Frontmatter is not a mapping; ignoring it")
        return {}, content
    return data, body


def _strip_wikilink_header(body: str) -> str:
    lines = body.strip().split("\n")
    if lines and _WIKILINK_LINE_RE.match(lines[0].strip()):
        lines = lines[1:]
    return "\n".join(lines).strip()


def _parse_tags(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = [t.strip() for t in value.split(",")]
    else:
        items = [str(t).strip() for t in value]
    return [t for t in items if t and t != CAPTURE_TAG]


def _parse_created(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    return None


def parse_record(content: str, default_id: str) -> Record:
    """Build a Record from a markdown capture file's content."""
    meta, body = split_frontmatter(content)
    transcript = _strip_wikilink_header(body)
    title = str(meta.get("title") or "").strip() or title_from_transcript(transcript)

    return Record(
        id=str(meta.get("id") or default_id),
        title=title,
        transcript=transcript,
        summary=str(meta.get("summary") or "").strip(),
        context=str(meta.get("context") or "").strip(),
        tags=_parse_tags(meta.get("tags")),
        created_at=_parse_created(meta.get("created")),
    )


class MarkdownRecordRepository(RecordRepository):
    """Records stored as ``*.md`` capture files with YAML frontmatter.

    Usage:
        repo = MarkdownRecordRepository(Path("captures"))
        records = await repo.list_all()
    """

    def __init__(self, records_dir: Path):
        self.records_dir = Path(records_dir)

    def _load_all(self) -> list[Record]:
        if not self.records_dir.is_dir():
            return []

        records: dict[str, Record] = {}
        for path in sorted(self.records_dir.glob("*.md")):
            try:
                content = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Skipping unreadable capture {path.name}: {e}")
                continue
            record = parse_record(content, default_id=path.stem)
            if record.id in records:
                logger.warning(f"Duplicate record id {record.id!r} in {path.name}; skipping")
                continue
            records[record.id] = record

        return [records[key] for key in sorted(records)]

    async def list_all(self) -> list[Record]:
        return await asyncio.to_thread(self._load_all)

    def _load_one(self, record_id: str) -> Optional[Record]:
        path = self.records_dir / f"{record_id}.md"
        if path.is_file():
            try:
                record = parse_record(path.read_text(encoding="utf-8"), default_id=path.stem)
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Cannot read capture {path.name}: {e}")
                return None
            if record.id == record_id:
                return record
        # The id may come from frontmatter rather than the filename.
        for record in self._load_all():
            if record.id == record_id:
                return record
        return None

    async def get(self, record_id: str) -> Optional[Record]:
        return await asyncio.to_thread(self._load_one, record_id)
