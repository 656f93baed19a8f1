"""
JSON note codec.

A note may hold a stream of concatenated JSON documents (appended by
independent writers and combined by line-wise merges). Decoding walks
the stream one document at a time and validates each against the
requested type with pydantic.

FAILURE SEMANTICS:
- Empty or whitespace-only content decodes to []
- The first undecodable or invalid document stops decoding; the error
  carries every value decoded before it
- NaN, Infinity and -Infinity are rejected like any other invalid token
- More than max_documents documents is an error, also with partial data
"""

import json
import logging
from typing import Any, List, Optional

from pydantic import TypeAdapter, ValidationError

from .adapter import CallContext
from .config import MAX_JSON_DOCUMENTS
from .errors import DecodedObjectLimitExceededError, NoteDecodeError, NoteNotFoundError
from .store import BaseNoteStore

logger = logging.getLogger(__name__)

# Characters of content shown either side of a decode failure
CONTEXT_RADIUS = 20


class _NonStandardConstantError(ValueError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"invalid constant {name}")


def _reject_constant(name: str) -> Any:
    # NaN, Infinity and -Infinity are not JSON
    raise _NonStandardConstantError(name)


_decoder = json.JSONDecoder(parse_constant=_reject_constant)


def _skip_whitespace(content: str, pos: int) -> int:
    while pos < len(content) and content[pos] in " \t\n\r":
        pos += 1
    return pos


def _context(content: str, offset: int) -> str:
    start = max(0, offset - CONTEXT_RADIUS)
    end = min(len(content), offset + CONTEXT_RADIUS)
    return content[start:end]


def encode(value: Any) -> str:
    """
    Serialize a value to a single JSON document.

    Works for pydantic models, dataclasses, dicts, lists and scalars.
    """
    return TypeAdapter(type(value)).dump_json(value).decode("utf-8")


def decode(content: str, item_type: Any = Any, max_documents: int = MAX_JSON_DOCUMENTS) -> List[Any]:
    """
    Decode a stream of concatenated JSON documents.

    Args:
        content: Note content
        item_type: Type each document is validated against (Any = plain JSON)
        max_documents: Maximum number of documents accepted

    Returns:
        Decoded values in stream order

    Raises:
        NoteDecodeError: A document failed to parse or validate
        DecodedObjectLimitExceededError: More than max_documents documents
    """
    adapter = TypeAdapter(item_type)
    type_name = getattr(item_type, "__name__", repr(item_type))
    results: List[Any] = []

    pos = _skip_whitespace(content, 0)
    while pos < len(content):
        if len(results) >= max_documents:
            raise DecodedObjectLimitExceededError(max_documents, results, pos, _context(content, pos))

        try:
            raw, end = _decoder.raw_decode(content, pos)
        except json.JSONDecodeError as e:
            raise NoteDecodeError(
                f"Failed to decode JSON document into {type_name}: {e.msg}",
                results,
                e.pos,
                _context(content, e.pos),
            ) from e
        except _NonStandardConstantError as e:
            offset = content.find(e.name, pos)
            if offset < 0:
                offset = pos
            raise NoteDecodeError(
                f"Failed to decode JSON document into {type_name}: {e}",
                results,
                offset,
                _context(content, offset),
            ) from e

        try:
            results.append(adapter.validate_python(raw))
        except ValidationError as e:
            raise NoteDecodeError(
                f"JSON document does not match {type_name}: {e.error_count()} validation error(s)",
                results,
                pos,
                _context(content, pos),
            ) from e

        pos = _skip_whitespace(content, end)

    return results


class JsonNoteCodec:
    """Typed JSON read/write on top of an annotation store."""

    def __init__(self, store: BaseNoteStore, max_documents: int = MAX_JSON_DOCUMENTS):
        self.store = store
        self.max_documents = max_documents

    def set_json(
        self, namespace: str, commit_ref: str, value: Any, ctx: Optional[CallContext] = None
    ) -> None:
        """Encode value and store it as the note, replacing any existing note."""
        self.store.set(namespace, commit_ref, encode(value), ctx=ctx)

    def get_json(
        self,
        namespace: str,
        commit_ref: str = "",
        item_type: Any = Any,
        ctx: Optional[CallContext] = None,
    ) -> List[Any]:
        """
        Read and decode the note of a commit.

        Returns:
            Decoded documents; [] when the commit has no note

        Raises:
            NoteDecodeError: The note is not a valid document stream
            InvalidCommitRefError: Malformed or unresolvable commit ref
        """
        try:
            content = self.store.get(namespace, commit_ref, ctx=ctx)
        except NoteNotFoundError:
            logger.debug(f"[Codec] No note for {commit_ref or 'HEAD'} in {namespace!r}")
            return []
        return decode(content, item_type, max_documents=self.max_documents)
