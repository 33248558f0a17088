"""Destination naming: content types, key sanitization and traceability metadata."""

from __future__ import annotations

import hashlib
import posixpath
import re
import unicodedata
from dataclasses import dataclass
from urllib.parse import quote, unquote

DEFAULT_CONTENT_TYPE = "application/octet-stream"

CONTENT_TYPES: dict[str, str] = {
    ".epub": "application/epub+zip",
    ".pdf": "application/pdf",
    ".mobi": "application/x-mobipocket-ebook",
    ".azw3": "application/vnd.amazon.ebook",
    ".cbz": "application/vnd.comicbook+zip",
    ".cbr": "application/vnd.comicbook-rar",
    ".zip": "application/zip",
    ".mp3": "audio/mpeg",
    ".m4a": "audio/mp4",
    ".m4b": "audio/mp4",
    ".ogg": "audio/ogg",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".json": "application/json",
    ".txt": "text/plain",
    ".html": "text/html",
}

# Metadata keys written with every migrated object.
META_ORIGINAL_PATH = "original-path"
META_MIGRATED_FROM = "migrated-from"
META_MIGRATION_DATE = "migration-date"
META_ORIGINAL_SIZE = "original-size"

SAFE_KEY_RE = re.compile(r"^[A-Za-z0-9._/-]+$")
_PARENS_RE = re.compile(r"[()]")
_WHITESPACE_RE = re.compile(r"\s+")
_DISALLOWED_RE = re.compile(r"[^A-Za-z0-9._-]")
_MULTI_UNDERSCORE_RE = re.compile(r"__+")


def content_type_for(identifier: str) -> str:
    _, ext = posixpath.splitext(identifier.lower())
    return CONTENT_TYPES.get(ext, DEFAULT_CONTENT_TYPE)


def strip_accents(value: str) -> str:
    """``"Canción"`` -> ``"Cancion"``; ``ñ`` becomes ``n``."""
    decomposed = unicodedata.normalize("NFKD", value)
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def _clean(value: str) -> str:
    out = strip_accents(value)
    out = _PARENS_RE.sub("", out)
    out = _WHITESPACE_RE.sub("_", out.strip())
    out = _DISALLOWED_RE.sub("", out)
    out = _MULTI_UNDERSCORE_RE.sub("_", out)
    return out.strip("_")


def sanitize_segment(segment: str) -> str:
    """Reduce one path segment to ``[A-Za-z0-9._-]``.

    A name that sanitizes to nothing (e.g. all CJK) becomes a short hash of the
    original, keeping its extension, so distinct names stay distinct.
    """
    root, ext = posixpath.splitext(segment)
    clean_root = _clean(root)
    clean_ext = _clean(ext)
    if not clean_root.strip("."):
        clean_root = hashlib.sha1(segment.encode("utf-8")).hexdigest()[:12]
    return f"{clean_root}{clean_ext}"


def encode_original_identifier(identifier: str) -> str:
    """Percent-encode an identifier so it survives ASCII-only metadata headers."""
    return quote(identifier, safe="/")


def original_identifier(metadata: dict[str, str]) -> str | None:
    """Recover the pre-sanitization identifier from object metadata."""
    raw = metadata.get(META_ORIGINAL_PATH)
    return unquote(raw) if raw is not None else None


@dataclass(slots=True, frozen=True)
class NamingPolicy:
    """Maps source identifiers to destination keys."""

    sanitize: bool = True
    flatten: bool = False
    strip_prefix: str = ""
    key_prefix: str = ""

    def destination_key(self, identifier: str) -> str:
        key = identifier
        if self.strip_prefix and key.startswith(self.strip_prefix):
            key = key[len(self.strip_prefix) :]
        if self.flatten:
            key = posixpath.basename(key)
        segments = [s for s in key.split("/") if s and s not in (".", "..")]
        if self.sanitize:
            segments = [sanitize_segment(s) for s in segments]
        key = "/".join(segments)
        if not key:
            key = hashlib.sha1(identifier.encode("utf-8")).hexdigest()[:12]
        if self.key_prefix:
            key = f"{self.key_prefix.rstrip('/')}/{key}"
        return key

    def disambiguated_key(self, identifier: str) -> str:
        """Fallback key for an identifier whose natural key belongs to another item.

        ``libro.epub`` becomes ``libro-<sha1[:8]>.epub``; the suffix depends only
        on the identifier, so reruns resolve to the same key.
        """
        root, ext = posixpath.splitext(self.destination_key(identifier))
        digest = hashlib.sha1(identifier.encode("utf-8")).hexdigest()[:8]
        return f"{root}-{digest}{ext}"

    @staticmethod
    def is_safe_key(key: str) -> bool:
        return bool(SAFE_KEY_RE.match(key))
