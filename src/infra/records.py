"""Loading persisted records through their pydantic schemas.

Corrupt or schema-violating files surface as RecordValidationError; nothing here
repairs or skips bad data.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from src.infra.errors import RecordValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_record(model: type[ModelT], data: Any, *, source: str, path: Path | None = None) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise RecordValidationError(
            f"Invalid {model.__name__} in {source}: {e}", path=path
        ) from e


def parse_json_line(model: type[ModelT], line: str, *, source: str, path: Path | None = None) -> ModelT:
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise RecordValidationError(f"Invalid JSON in {source}: {e}", path=path) from e
    return parse_record(model, data, source=source, path=path)


def load_record(model: type[ModelT], path: Path) -> ModelT:
    """Read and validate a JSON record file. The file must exist."""
    text = path.read_text(encoding="utf-8")
    return parse_json_line(model, text, source=str(path), path=path)


def load_record_optional(model: type[ModelT], path: Path) -> ModelT | None:
    if not path.exists():
        return None
    return load_record(model, path)
