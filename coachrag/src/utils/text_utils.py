"""
CoachRAG - Text Utilities
==========================
Helpers for reading source documents, normalising their text, and
mapping between file names and vector record ids.

Ingestion and retrieval-time chunk re-derivation both go through
``load_document_text`` so that both sides see byte-identical text.
"""

from __future__ import annotations

import re
import unicodedata
from pathlib import Path

# Control characters plus BOM / zero-width / soft-hyphen artifacts
_NON_PRINTABLE_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f\ufeff\u200b\u200c\u200d\u200e\u200f\u00ad\u2060\ufffe]")
_WHITESPACE_RE = re.compile(r"\s+")
_FRONT_MATTER_RE = re.compile(r"^---[\s\S]*?---")
_HTML_COMMENT_RE = re.compile(r"<!--[\s\S]*?-->")
_RECORD_ID_RE = re.compile(r"^(.+)-chunk-(\d+)$")

MARKUP_EXTENSIONS = {".md", ".mdx"}
SUPPORTED_EXTENSIONS = {".txt", ".pdf"} | MARKUP_EXTENSIONS


def normalize_whitespace(text: str) -> str:
    """
    NFC-normalise *text*, drop non-printable characters and collapse every
    whitespace run (newlines included) to a single space.
    """
    text = unicodedata.normalize("NFC", text)
    text = _NON_PRINTABLE_RE.sub("", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def strip_markup(text: str) -> str:
    """Remove a leading ``---`` front-matter block and HTML comments."""
    text = _FRONT_MATTER_RE.sub("", text, count=1)
    return _HTML_COMMENT_RE.sub("", text).strip()


def read_document(filepath: Path) -> str:
    """
    Return the raw text of a supported document.

    ``.pdf`` files are extracted page by page with ``pypdf``; everything
    else is read as UTF-8 with a latin-1 fallback.
    """
    if filepath.suffix.lower() == ".pdf":
        from pypdf import PdfReader

        reader = PdfReader(str(filepath))
        return "\n".join(page.extract_text() or "" for page in reader.pages)

    try:
        return filepath.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return filepath.read_text(encoding="latin-1")


def load_document_text(filepath: Path) -> str:
    """
    Read *filepath* and return its normalised text.

    Markdown bodies that are empty after stripping fall back to the file
    stem so that a record always resolves to *something*.
    """
    raw = read_document(filepath)
    if filepath.suffix.lower() in MARKUP_EXTENSIONS:
        body = strip_markup(raw)
        return normalize_whitespace(body) if body else filepath.stem
    return normalize_whitespace(raw)


def make_record_id(file_name: str, chunk_index: int) -> str:
    """``"plan.pdf", 3`` → ``"plan-chunk-3"``."""
    return f"{Path(file_name).stem}-chunk-{chunk_index}"


def parse_record_id(record_id: str) -> tuple[str, int] | None:
    """Inverse of ``make_record_id``: return ``(base_name, chunk_index)`` or *None*."""
    match = _RECORD_ID_RE.match(record_id)
    if match is None:
        return None
    return match.group(1), int(match.group(2))
