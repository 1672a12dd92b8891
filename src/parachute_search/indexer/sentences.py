"""Split transcript text into sentences.

The splitter never breaks inside abbreviations ("Dr.", "e.g."), decimal
numbers ("3.5"), URLs or email addresses, and treats terminal punctuation
followed by a closing quote or bracket (`."`) as a single boundary.
Sentences are returned stripped; joining them with single spaces gives back
the input text with whitespace normalized.
"""

import re
from typing import Iterable, Optional

from .errors import SegmentationError

DEFAULT_ABBREVIATIONS = frozenset(
    {
        "dr",
        "mr",
        "mrs",
        "ms",
        "prof",
        "sr",
        "jr",
        "phd",
        "md",
        "inc",
        "corp",
        "ltd",
        "etc",
        "e.g",
        "i.e",
        "vs",
        "p.m",
        "a.m",
    }
)

_TERMINALS = ".!?"
_CLOSERS = "\"')]}”’"
_OPENERS = "\"'([{“‘"

# URLs stop before trailing sentence punctuation so "see example.com." still ends a sentence.
_PROTECTED_RE = re.compile(
    r"(?:https?://|www\.)[^\s]*[^\s.,!?;:)\]\"']"
    r"|[\w.+-]+@[\w-]+(?:\.[\w-]+)+",
    re.IGNORECASE,
)


def _protected_spans(text: str) -> list[tuple[int, int]]:
    return [(m.start(), m.end()) for m in _PROTECTED_RE.finditer(text)]


def _in_spans(index: int, spans: list[tuple[int, int]]) -> bool:
    return any(start <= index < end for start, end in spans)


class SentenceSegmenter:
    """Rule-based sentence splitter.

    Stateless: every call to ``split`` recomputes from scratch.
    """

    def __init__(self, abbreviations: Optional[Iterable[str]] = None):
        if abbreviations is None:
            self.abbreviations = DEFAULT_ABBREVIATIONS
        else:
            self.abbreviations = frozenset(a.lower().rstrip(".") for a in abbreviations)

    def split(self, text: str) -> list[str]:
        """Split ``text`` into an ordered list of sentences.

        Args:
            text: Raw text. Bytes are decoded as UTF-8.

        Returns:
            List of sentences. Empty input yields an empty list; text without
            terminal punctuation yields a single sentence.

        Raises:
            SegmentationError: If the input is not text.
        """
        if isinstance(text, bytes):
            try:
                text = text.decode("utf-8")
            except UnicodeDecodeError as e:
                raise SegmentationError(f"Input is not valid UTF-8: {e}") from e
        if not isinstance(text, str):
            raise SegmentationError(f"Cannot segment {type(text).__name__}")
        if not text.strip():
            return []

        protected = _protected_spans(text)
        sentences: list[str] = []
        length = len(text)
        start = 0
        i = 0

        while i < length:
            if text[i] not in _TERMINALS or _in_spans(i, protected):
                i += 1
                continue

            # A run like "?!" or "..." breaks once, after its last mark.
            end = i + 1
            while end < length and text[end] in _TERMINALS:
                end += 1
            while end < length and text[end] in _CLOSERS:
                end += 1

            if self._is_boundary(text, i, end):
                sentence = text[start:end].strip()
                if sentence:
                    sentences.append(sentence)
                start = end
            i = end

        tail = text[start:].strip()
        if tail:
            sentences.append(tail)
        return sentences

    def _is_boundary(self, text: str, mark: int, end: int) -> bool:
        """Decide whether the punctuation run text[mark:end] ends a sentence."""
        length = len(text)
        if end >= length:
            return True
        if not text[end].isspace():
            return False

        single_period = text[mark] == "." and (end - mark == 1 or text[mark + 1] in _CLOSERS)
        if single_period:
            if self._is_decimal(text, mark) or self._is_abbreviation(text, mark):
                return False

        nxt = end
        while nxt < length and text[nxt].isspace():
            nxt += 1
        while nxt < length and text[nxt] in _OPENERS:
            nxt += 1
        if nxt < length and text[nxt].islower():
            return False
        return True

    @staticmethod
    def _is_decimal(text: str, mark: int) -> bool:
        return (
            mark > 0
            and mark + 1 < len(text)
            and text[mark - 1].isdigit()
            and text[mark + 1].isdigit()
        )

    def _is_abbreviation(self, text: str, mark: int) -> bool:
        word_start = mark
        while word_start > 0 and not text[word_start - 1].isspace():
            word_start -= 1
        word = text[word_start:mark].lstrip(_OPENERS).lower()
        return word in self.abbreviations


_default_segmenter = SentenceSegmenter()


def split_sentences(text: str) -> list[str]:
    """Split text into sentences using the default abbreviation set."""
    return _default_segmenter.split(text)
