from __future__ import annotations

import json
from typing import Any, List

from pydantic import BaseModel, StrictInt, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from docshift.assembly import BlankPage, CopyPage, Operation, RotatePage
from docshift.errors import ValidationError

BLANK_MARKER = "blank"


class DownloadResponse(BaseModel):
    downloadUrl: str
    size: int


class AssemblyResponse(DownloadResponse):
    pageCount: int
    skippedPages: List[int] = []


class CompressionResponse(BaseModel):
    downloadUrl: str
    originalSize: int
    finalSize: int
    compressionPercent: int
    method: str


class VideoResponse(BaseModel):
    downloadUrl: str
    finalSize: int


class RotateAction(BaseModel):
    originalIndex: StrictInt
    rotation: int = 0

    @field_validator("rotation")
    @classmethod
    def rotation_is_right_angle(cls, value: int) -> int:
        if value % 90:
            raise ValueError("rotation must be a multiple of 90")
        return value


_rotate_actions = TypeAdapter(List[RotateAction])


def _load_actions(raw: str) -> List[Any]:
    try:
        actions = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Invalid actions JSON: {exc}") from exc
    if not isinstance(actions, list):
        raise ValidationError("Actions must be a JSON list.")
    return actions


def parse_organize_actions(raw: str) -> List[Operation]:
    """``[0, 2, "blank", 1]`` -> copy page 0, copy page 2, blank page, copy page 1."""
    operations: List[Operation] = []
    for position, action in enumerate(_load_actions(raw)):
        if action == BLANK_MARKER:
            operations.append(BlankPage())
        elif isinstance(action, int) and not isinstance(action, bool):
            operations.append(CopyPage(action))
        else:
            raise ValidationError(f"Invalid action at position {position}: expected a page index or '{BLANK_MARKER}', got {action!r}")
    return operations


def parse_rotate_actions(raw: str) -> List[Operation]:
    """``[{"originalIndex": 0, "rotation": -90}, ...]`` -> rotate-and-copy operations."""
    try:
        actions = _rotate_actions.validate_python(_load_actions(raw))
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid rotate actions: {exc.errors(include_url=False)}") from exc
    return [RotatePage(action.originalIndex, action.rotation) for action in actions]
