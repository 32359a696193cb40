"""
Data model for Roster Sync.

This module defines the value objects that flow through a reconciliation pass:
the validated intake shape of a directory entry, the normalized profile record,
avatar decisions, exclusions, and the plan/result pair produced by the
reconciler.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


def normalize_identity(value: Optional[str]) -> str:
    """Return the identity key for an email address (trimmed, lower-cased)."""
    if not value:
        return ''
    return str(value).strip().lower()


class AvatarMethod(str, Enum):
    """How an avatar decision was reached."""

    NO_IMAGE = 'no-image'
    URL_PATTERN = 'url-pattern'
    GRAVATAR_FALLBACK = 'gravatar-fallback'
    GRAVATAR_GENERIC = 'gravatar-generic'
    COLOR_ANALYSIS = 'color-analysis'
    REAL_AVATAR = 'real-avatar'
    ANALYSIS_FAILED = 'analysis-failed'


class ExclusionReason(str, Enum):
    """Why a source entry was left out of the desired set."""

    ALUMNI = 'alumni'
    MISSING_IDENTITY = 'missing-identity'
    MISSING_NAME = 'missing-name'
    INVALID_ROLE = 'invalid-role'
    DUPLICATE_IDENTITY = 'duplicate-identity'


class SourceEntry(BaseModel):
    """
    Validated intake shape of one raw directory entry.

    Source adapters hand over loosely-typed dictionaries; everything past this
    boundary works with the fixed fields below. Unknown keys are ignored and
    blank strings are treated as missing.
    """

    model_config = ConfigDict(extra='ignore', frozen=True)

    name: Optional[str] = None
    email: Optional[str] = None
    title: Optional[str] = None
    image_ref: Optional[str] = None
    source_id: Optional[str] = None
    username: Optional[str] = None

    @field_validator('name', 'email', 'title', 'image_ref', 'source_id', 'username', mode='before')
    @classmethod
    def _blank_to_none(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, str):
            value = str(value)
        value = value.strip()
        return value or None


class RoleFacts(BaseModel):
    """Structured facts parsed out of a free-text profile title."""

    model_config = ConfigDict(frozen=True)

    position: str = ''
    department: str = ''
    is_alumni: bool = False


class Role(BaseModel):
    model_config = ConfigDict(frozen=True)

    position: str
    department: str


class RoleValidation(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid_position: bool
    is_valid_department: bool

    @property
    def is_valid(self) -> bool:
        return self.is_valid_position and self.is_valid_department


class AvatarDecision(BaseModel):
    """Outcome of classifying a profile picture."""

    model_config = ConfigDict(frozen=True)

    is_default: bool
    method: AvatarMethod
    coverage: Optional[float] = None
    dominant_color: Optional[str] = None

    @classmethod
    def analysis_failed(cls) -> 'AvatarDecision':
        # Unreachable or undecodable images are kept as authentic
        return cls(is_default=False, method=AvatarMethod.ANALYSIS_FAILED)


class ProfileRecord(BaseModel):
    """One directory member after normalization."""

    model_config = ConfigDict(frozen=True)

    identity: str
    display_name: str
    role: Optional[Role] = None
    avatar_ref: Optional[str] = None
    avatar_decision: Optional[AvatarDecision] = None
    is_alumni: bool = False
    is_valid_role: bool = False
    source_id: Optional[str] = None
    username: Optional[str] = None

    @property
    def published_avatar(self) -> Optional[str]:
        """Avatar reference to publish, or None when the picture is a placeholder."""
        if not self.avatar_ref or self.avatar_decision is None:
            return None
        if self.avatar_decision.is_default:
            return None
        return self.avatar_ref


class ExistingRecord(BaseModel):
    """A record currently stored in the sink, keyed by identity."""

    model_config = ConfigDict(extra='ignore', frozen=True)

    identity: str
    sink_id: Optional[str] = None
    display_name: Optional[str] = None
    position: Optional[str] = None
    department: Optional[str] = None

    @field_validator('identity', mode='before')
    @classmethod
    def _normalize(cls, value: Any) -> str:
        return normalize_identity(value)


class Exclusion(BaseModel):
    """A source entry that did not make it into the desired set."""

    model_config = ConfigDict(frozen=True)

    identity: str = ''
    display_name: str = ''
    reason: ExclusionReason
    detail: str = ''


class NormalizationReport(BaseModel):
    desired: List[ProfileRecord] = Field(default_factory=list)
    exclusions: List[Exclusion] = Field(default_factory=list)
    alumni_count: int = 0
    default_avatar_count: int = 0

    def exclusions_by_reason(self) -> Dict[str, List[Exclusion]]:
        grouped: Dict[str, List[Exclusion]] = {}
        for exclusion in self.exclusions:
            grouped.setdefault(exclusion.reason.value, []).append(exclusion)
        return grouped


class SyncPlan(BaseModel):
    """Create/update/delete plan computed from desired and existing identity sets."""

    to_create: List[ProfileRecord] = Field(default_factory=list)
    to_update: List[Tuple[str, ProfileRecord]] = Field(default_factory=list)
    to_delete: List[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.to_create or self.to_update or self.to_delete)


class SyncItemError(BaseModel):
    identity: str
    operation: str
    message: str


class SyncResult(BaseModel):
    """Outcome of applying a plan. Counts only include successful operations."""

    created: int = 0
    updated: int = 0
    deleted: int = 0
    errors: List[SyncItemError] = Field(default_factory=list)

    def record_error(self, identity: str, operation: str, message: str) -> None:
        self.errors.append(SyncItemError(identity=identity, operation=operation, message=message))

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)
