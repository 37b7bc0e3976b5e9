"""
Taxonomy - Folder path to structured tags.

The folder layout is the schema:

    Subjects / <Subject> / <GradeLevel> / Lesson - '<Lesson>' / Part - '<LessonPart>' / <file>

Parsing is pure and never raises. Paths the grammar cannot explain come
back as `unstructured` so the orchestrator can route them to review instead
of dropping them.
"""

import posixpath
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Pattern, Sequence, Tuple

from .models import Confidence, Facet, FileType, ParseResult


# Extension → file type. Checked before the MIME type.
EXTENSION_TYPES: Dict[str, FileType] = {
    # Video
    ".mp4": FileType.VIDEO, ".mov": FileType.VIDEO, ".avi": FileType.VIDEO,
    ".mkv": FileType.VIDEO, ".webm": FileType.VIDEO, ".m4v": FileType.VIDEO,
    ".wmv": FileType.VIDEO,
    # Image
    ".jpg": FileType.IMAGE, ".jpeg": FileType.IMAGE, ".png": FileType.IMAGE,
    ".gif": FileType.IMAGE, ".webp": FileType.IMAGE, ".heic": FileType.IMAGE,
    ".bmp": FileType.IMAGE, ".tiff": FileType.IMAGE, ".svg": FileType.IMAGE,
    # Documents
    ".pdf": FileType.DOCUMENT, ".doc": FileType.DOCUMENT, ".docx": FileType.DOCUMENT,
    ".txt": FileType.DOCUMENT, ".rtf": FileType.DOCUMENT, ".odt": FileType.DOCUMENT,
    ".md": FileType.DOCUMENT, ".ppt": FileType.DOCUMENT, ".pptx": FileType.DOCUMENT,
    ".xls": FileType.DOCUMENT, ".xlsx": FileType.DOCUMENT, ".csv": FileType.DOCUMENT,
    # Design sources
    ".psd": FileType.DESIGN_SOURCE, ".ai": FileType.DESIGN_SOURCE,
    ".sketch": FileType.DESIGN_SOURCE, ".fig": FileType.DESIGN_SOURCE,
    ".indd": FileType.DESIGN_SOURCE, ".xd": FileType.DESIGN_SOURCE,
    ".afdesign": FileType.DESIGN_SOURCE, ".aep": FileType.DESIGN_SOURCE,
    ".prproj": FileType.DESIGN_SOURCE,
}

MIME_TYPES: Dict[str, FileType] = {
    "application/pdf": FileType.DOCUMENT,
    "application/msword": FileType.DOCUMENT,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": FileType.DOCUMENT,
    "application/vnd.google-apps.document": FileType.DOCUMENT,
    "application/vnd.google-apps.spreadsheet": FileType.DOCUMENT,
    "application/vnd.google-apps.presentation": FileType.DOCUMENT,
    "image/vnd.adobe.photoshop": FileType.DESIGN_SOURCE,
    "application/illustrator": FileType.DESIGN_SOURCE,
}

MIME_PREFIXES: Tuple[Tuple[str, FileType], ...] = (
    ("video/", FileType.VIDEO),
    ("image/", FileType.IMAGE),
    ("text/", FileType.DOCUMENT),
)


def classify_file_type(name: str, mime_type: Optional[str] = None) -> FileType:
    """Static lookup: extension first, then exact MIME, then MIME family."""
    ext = posixpath.splitext(name or "")[1].lower()
    if ext in EXTENSION_TYPES:
        return EXTENSION_TYPES[ext]

    mime = (mime_type or "").lower()
    if mime in MIME_TYPES:
        return MIME_TYPES[mime]
    for prefix, file_type in MIME_PREFIXES:
        if mime.startswith(prefix):
            return file_type

    return FileType.OTHER


@dataclass(frozen=True)
class GrammarRule:
    """
    Binds one path segment to a facet.

    A generic rule accepts any segment, but never one a later specific rule
    in the grammar would accept.
    """
    facet: str
    pattern: Pattern[str]
    generic: bool = False

    def match(self, segment: str) -> Optional[str]:
        m = self.pattern.match(segment)
        if not m:
            return None
        value = m.group("value") if "value" in self.pattern.groupindex else m.group(0)
        value = value.strip()
        return value or None


_QUOTES = "'\"‘’“”"

DEFAULT_GRAMMAR: Tuple[GrammarRule, ...] = (
    GrammarRule(Facet.SUBJECT.value, re.compile(r"^(?P<value>.+)$"), generic=True),
    GrammarRule(
        Facet.GRADE_LEVEL.value,
        re.compile(r"^(?P<value>(?:grade|year|class)\s*\d+|kindergarten|pre-?k)$", re.IGNORECASE),
    ),
    GrammarRule(
        Facet.LESSON.value,
        re.compile(rf"^lesson\s*[-–:]\s*[{_QUOTES}]?(?P<value>.+?)[{_QUOTES}]?$", re.IGNORECASE),
    ),
    GrammarRule(
        Facet.LESSON_PART.value,
        re.compile(rf"^part\s*[-–:]\s*[{_QUOTES}]?(?P<value>.+?)[{_QUOTES}]?$", re.IGNORECASE),
    ),
)


def split_path(path: str) -> List[str]:
    """Split a slash-separated path into non-empty, trimmed segments."""
    return [seg.strip() for seg in (path or "").replace("\\", "/").split("/") if seg.strip()]


class TaxonomyParser:
    """
    Ordered grammar over path segments.

    Rules are tried in order. A level missing from the path is skipped, a
    segment no remaining rule accepts is recorded as unmatched. Both lower
    the confidence but never fail the parse.
    """

    def __init__(
        self,
        anchor: str = "Subjects",
        rules: Sequence[GrammarRule] = DEFAULT_GRAMMAR,
    ):
        self.anchor = anchor
        self.rules = tuple(rules)

    def parse(self, path: str, mime_type: Optional[str] = None) -> ParseResult:
        """Parse a full file path into tags and a confidence level."""
        segments = split_path(path)
        file_name = segments[-1] if segments else ""
        folders = segments[:-1]

        tags: Dict[str, str] = {
            Facet.FILE_TYPE.value: classify_file_type(file_name, mime_type).value
        }

        anchor_at = self._find_anchor(folders)
        if anchor_at is None:
            return ParseResult(tags=tags, confidence=Confidence.UNSTRUCTURED, unmatched=tuple(folders))

        bound, unmatched = self._bind(folders[anchor_at + 1:])
        tags.update(bound)

        if not bound:
            confidence = Confidence.UNSTRUCTURED
        elif len(bound) == len(self.rules) and not unmatched:
            confidence = Confidence.FULL
        else:
            confidence = Confidence.PARTIAL

        return ParseResult(tags=tags, confidence=confidence, unmatched=tuple(unmatched))

    def _find_anchor(self, folders: List[str]) -> Optional[int]:
        wanted = self.anchor.casefold()
        for i, seg in enumerate(folders):
            if seg.casefold() == wanted:
                return i
        return None

    def _bind(self, segments: List[str]) -> Tuple[Dict[str, str], List[str]]:
        bound: Dict[str, str] = {}
        unmatched: List[str] = []
        cursor = 0  # index of the next rule allowed to bind

        for seg in segments:
            hit = self._first_rule(seg, cursor)
            if hit is None:
                unmatched.append(seg)
                continue
            rule_index, value = hit
            bound[self.rules[rule_index].facet] = value
            cursor = rule_index + 1

        return bound, unmatched

    def _first_rule(self, segment: str, start: int) -> Optional[Tuple[int, str]]:
        for i in range(start, len(self.rules)):
            rule = self.rules[i]
            value = rule.match(segment)
            if value is None:
                continue
            if rule.generic and self._specific_match(segment, i + 1):
                continue
            return i, value
        return None

    def _specific_match(self, segment: str, start: int) -> bool:
        return any(
            not r.generic and r.match(segment) is not None
            for r in self.rules[start:]
        )


_default_parser = TaxonomyParser()


def parse(path: str, mime_type: Optional[str] = None) -> ParseResult:
    """
    Convenience function using the default grammar.

    Usage:
        result = parse("/Subjects/English/Grade 4/Lesson - 'Nature'/Part - 'Intro'/clip.mp4")
        print(result.tags, result.confidence)
    """
    return _default_parser.parse(path, mime_type)
