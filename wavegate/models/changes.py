"""File-level change models: produced upstream, consumed read-only."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class TransformationKind(str, Enum):
    """The kind of automated edit a FileChange carries.

    The kind drives the base risk weight and tells the Behavior Verifier
    which structural changes are expected.
    """

    FORMATTING = "formatting"
    DOCUMENTATION = "documentation"
    IMPORT_CLEANUP = "import_cleanup"
    TYPE_ANNOTATION = "type_annotation"
    MODERNIZE_SYNTAX = "modernize_syntax"
    RENAME_SYMBOL = "rename_symbol"
    DEAD_CODE_REMOVAL = "dead_code_removal"
    MOVE_SYMBOL = "move_symbol"
    FUNCTION_EXTRACTION = "function_extraction"
    COMPLEXITY_REDUCTION = "complexity_reduction"
    API_MIGRATION = "api_migration"


class FileChange(BaseModel):
    """One file's proposed edit.

    ``before_content is None`` means the file is created by the change;
    ``after_content is None`` means the change deletes the file.
    ``depends_on`` lists paths of other changes in the same request whose
    modified symbols this file uses.
    """

    model_config = ConfigDict(frozen=True)

    path: str
    transformation_kind: TransformationKind
    before_content: str | None = None
    after_content: str | None = None
    depends_on: list[str] = []

    @field_validator("path")
    @classmethod
    def _check_path(cls, value: str) -> str:
        # Paths are workspace-relative; nothing may reach outside the root.
        parts = PurePosixPath(value).parts
        if not parts or value.startswith("/") or ".." in parts:
            raise ValueError(f"{value!r} is not a path inside the workspace")
        return value

    @model_validator(mode="after")
    def _check_contents(self) -> FileChange:
        if self.before_content is None and self.after_content is None:
            raise ValueError(f"FileChange for {self.path} has neither before nor after content")
        return self

    @property
    def is_creation(self) -> bool:
        return self.before_content is None

    @property
    def is_deletion(self) -> bool:
        return self.after_content is None


class TransformationRequest(BaseModel):
    """A caller's submission: a list of file changes plus metadata.

    Parameters
    ----------
    coverage:
        Measured test coverage (percent, 0..100) per affected path.
        Missing paths are treated as unknown coverage.
    language:
        Overrides per-file language detection when every change in the
        request is in the same language.
    feature_flag_key:
        When set, each completed wave is exposed gradually through the
        feature-flag service.
    """

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(default_factory=lambda: f"tr-{uuid.uuid4().hex[:12]}")
    title: str = ""
    changes: list[FileChange] = []
    coverage: dict[str, float] = {}
    language: str | None = None
    branch: str = "wavegate/transform"
    feature_flag_key: str | None = None
    submitted_by: str = ""
    submitted_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
