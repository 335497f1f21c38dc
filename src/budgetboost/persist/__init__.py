"""Model persistence: JSON encoding and file I/O.

Models convert themselves to and from the schemas in
:mod:`budgetboost.persist.schema`; this module wraps them in a versioned
envelope and maps every failure onto :class:`IoError` or
:class:`DeserializationError`.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import TypeVar

from pydantic import BaseModel, ValidationError

from budgetboost.exceptions import DeserializationError, IoError
from budgetboost.persist.schema import FORMAT_VERSION, EnvelopeHeader, JsonEnvelope

__all__: list[str] = [
    "dumps",
    "loads",
    "read_file",
    "write_file",
]

logger = logging.getLogger(__name__)


def dumps(model_type: str, model: BaseModel) -> str:
    """Encode ``model`` inside a versioned envelope."""
    envelope = JsonEnvelope[type(model)](format_version=FORMAT_VERSION, model_type=model_type, model=model)
    return json.dumps(envelope.model_dump())


T = TypeVar("T", bound=BaseModel)


def loads(text: str | bytes, schema: type[T], model_type: str) -> T:
    """Decode an envelope produced by :func:`dumps`.

    Raises:
        DeserializationError: If the text is not JSON, does not match the
            schema, or holds a different model type or format version.
    """
    try:
        payload = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise DeserializationError(f"Malformed model JSON: {e}") from e
    # Parsed JSON objects are plain dicts, which strict model validation rejects.
    try:
        header = EnvelopeHeader.model_validate(payload, strict=False)
    except ValidationError as e:
        raise DeserializationError(f"Invalid model payload header ({e.error_count()} errors): {e}") from e
    if header.format_version != FORMAT_VERSION:
        raise DeserializationError(f"Unsupported format version {header.format_version}, expected {FORMAT_VERSION}")
    if header.model_type != model_type:
        raise DeserializationError(f"Expected a {model_type!r} model, got {header.model_type!r}")
    try:
        envelope = JsonEnvelope[schema].model_validate(payload, strict=False)  # type: ignore[valid-type]
    except ValidationError as e:
        raise DeserializationError(f"Invalid model payload ({e.error_count()} errors): {e}") from e
    return envelope.model


def write_file(path: str | os.PathLike[str], text: str) -> None:
    """Write ``text`` to ``path``, raising :class:`IoError` on failure."""
    try:
        Path(path).write_text(text, encoding="utf-8")
    except OSError as e:
        raise IoError(f"Cannot write model to {os.fspath(path)!r}: {e.strerror or e}") from e
    logger.debug("Saved model to %s", path)


def read_file(path: str | os.PathLike[str]) -> str:
    """Read a model file, raising :class:`IoError` or :class:`DeserializationError`."""
    try:
        return Path(path).read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise DeserializationError(f"Model file {os.fspath(path)!r} is not UTF-8 text") from e
    except OSError as e:
        raise IoError(f"Cannot read model from {os.fspath(path)!r}: {e.strerror or e}") from e
