"""
Structured document helpers.

A document is a JSON-equivalent tree: ``None | bool | int | float | str |
list[Document] | dict[str, Document]``. Everything that hashes, diffs,
resolves or persists configuration goes through these helpers so the shape
is checked once, at the write boundary.
"""

from __future__ import annotations

import copy
import hashlib
import json
import math
from typing import Any, Union

from .exceptions import ValidationError

Document = Union[None, bool, int, float, str, list["Document"], dict[str, "Document"]]

MAX_DOCUMENT_DEPTH = 64

NULL = "null"
BOOLEAN = "boolean"
NUMBER = "number"
STRING = "string"
ARRAY = "array"
OBJECT = "object"


def document_kind(value: Any) -> str:
    """Return the tag of a document node.

    ``bool`` is checked before ``int`` because it is a subclass of it.
    """
    if value is None:
        return NULL
    if isinstance(value, bool):
        return BOOLEAN
    if isinstance(value, (int, float)):
        return NUMBER
    if isinstance(value, str):
        return STRING
    if isinstance(value, (list, tuple)):
        return ARRAY
    if isinstance(value, dict):
        return OBJECT
    raise ValidationError(
        f"Unsupported document value of type {type(value).__name__}",
        value=value,
    )


def validate_document(value: Any, path: str = "$", depth: int = 0) -> None:
    """Reject obviously malformed documents.

    Raises:
        ValidationError: for unsupported types, non-string keys, non-finite
            numbers, or nesting deeper than MAX_DOCUMENT_DEPTH.
    """
    if depth > MAX_DOCUMENT_DEPTH:
        raise ValidationError(
            f"Document nesting exceeds {MAX_DOCUMENT_DEPTH} levels", field=path
        )

    kind = document_kind(value)

    if kind == NUMBER and isinstance(value, float) and not math.isfinite(value):
        raise ValidationError("Document numbers must be finite", field=path, value=value)

    if kind == ARRAY:
        for index, item in enumerate(value):
            validate_document(item, f"{path}[{index}]", depth + 1)
    elif kind == OBJECT:
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValidationError(
                    "Document keys must be strings", field=path, value=key
                )
            validate_document(item, f"{path}.{key}", depth + 1)


def validate_root_document(value: Any) -> dict[str, Document]:
    """Validate a named configuration value, which must be a map at the top."""
    if not isinstance(value, dict):
        raise ValidationError(
            "Configuration documents must be objects at the top level",
            field="$",
            value=type(value).__name__,
        )
    validate_document(value)
    return value


def canonical_json_bytes(doc: Document) -> bytes:
    """Produce canonical JSON bytes: sorted keys, compact separators, UTF-8."""
    return json.dumps(
        doc, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def content_hash(doc: Document) -> str:
    """SHA-256 hex digest of the canonical form.

    Documents that differ only in map key order hash identically; array
    order is significant.
    """
    return hashlib.sha256(canonical_json_bytes(doc)).hexdigest()


def deep_copy(doc: Document) -> Document:
    """Return an independent, structurally equal copy."""
    return copy.deepcopy(doc)


def documents_equal(left: Document, right: Document) -> bool:
    """Structural equality that keeps booleans and numbers apart."""
    if document_kind(left) != document_kind(right):
        return False
    if isinstance(left, (dict, list, tuple)):
        return canonical_json_bytes(left) == canonical_json_bytes(right)
    return left == right


def dumps(doc: Any) -> bytes:
    """Serialize a document (or a record dict) for the key/value store."""
    return json.dumps(doc, default=str, separators=(",", ":")).encode("utf-8")


def loads(raw: bytes | str) -> Any:
    """Deserialize bytes written by dumps()."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    return json.loads(raw)
