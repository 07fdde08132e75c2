import re
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DURATION_RE = re.compile(r"(?P<num>\d+(?:\.\d+)?)(?P<unit>ms|[smhdw])")
DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}
ZERO_HASH = "0" * 40


class WorkMode(StrEnum):
    AUTO = "auto"
    MANUAL = "manual"


class Operator(StrEnum):
    AND = "And"
    OR = "Or"


class ReferenceKind(StrEnum):
    BRANCH = "branch"
    TAG = "tag"


def parse_duration(value: str) -> timedelta:
    """Parse durations like '168h', '7d', '1h30m' or '2w'."""
    value = value.strip()
    matches = list(DURATION_RE.finditer(value))
    if not matches or "".join(m.group(0) for m in matches) != value:
        raise ValueError(f"invalid duration {value!r}, expected e.g. '12h', '7d', '1h30m'")
    total = timedelta()
    for m in matches:
        total += float(m.group("num")) * DURATION_UNITS[m.group("unit")]
    return total


def format_duration(value: timedelta) -> str:
    seconds = int(value.total_seconds())
    parts = []
    for unit, size in (("d", 86400), ("h", 3600), ("m", 60), ("s", 1)):
        if seconds >= size:
            parts.append(f"{seconds // size}{unit}")
            seconds %= size
    return "".join(parts) or "0s"


def compile_pattern(value: str) -> re.Pattern:
    """'/regexp/' is taken as is, anything else must match the whole name."""
    if value.startswith("/") and value.endswith("/"):
        expression = value[1:-1]
    else:
        expression = f"^{re.escape(value)}$"
    try:
        return re.compile(expression)
    except re.error as err:
        raise ValueError(f"invalid value {value!r} for `string|REGEX`: {err}") from err


class Limit(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    last: int | None = Field(default=None, ge=-1)
    in_: timedelta | None = Field(default=None, alias="in")
    operator: Operator | None = None

    @field_validator("in_", mode="before")
    @classmethod
    def parse_in(cls, value: Any) -> Any:
        if isinstance(value, str) and DURATION_RE.match(value.strip()):
            return parse_duration(value)
        return value

    @model_validator(mode="after")
    def set_default_operator(self) -> "Limit":
        if self.operator is None and self.last is not None and self.in_ is not None:
            self.operator = Operator.AND
        return self

    def is_empty(self) -> bool:
        return self.last is None and self.in_ is None

    def __str__(self) -> str:
        bounds = []
        if self.last is not None:
            bounds.append(f"last {self.last}" if self.last != -1 else "all")
        if self.in_ is not None:
            bounds.append(f"in {format_duration(self.in_)}")
        separator = f" {self.operator or Operator.AND} "
        return separator.join(bounds)


class ReferencesSelector(BaseModel):
    model_config = ConfigDict(extra="forbid")

    branch: re.Pattern | None = None
    tag: re.Pattern | None = None
    limit: Limit | None = None

    @field_validator("branch", "tag", mode="before")
    @classmethod
    def compile_selector(cls, value: Any) -> Any:
        if isinstance(value, str) and value:
            return compile_pattern(value)
        return value or None

    @model_validator(mode="after")
    def check_single_selector(self) -> "ReferencesSelector":
        if self.branch is None and self.tag is None:
            raise ValueError(
                "tag `tag: string|REGEX` or branch `branch: string|REGEX` required for cleanup keep policy"
            )
        if self.branch is not None and self.tag is not None:
            raise ValueError(
                "specify only tag `tag: string|REGEX` or branch `branch: string|REGEX` for cleanup keep policy"
            )
        return self

    @property
    def kind(self) -> ReferenceKind:
        return ReferenceKind.BRANCH if self.branch is not None else ReferenceKind.TAG

    @property
    def pattern(self) -> re.Pattern:
        return self.branch if self.branch is not None else self.tag  # type: ignore


class KeepPolicy(BaseModel):
    model_config = ConfigDict(extra="forbid")

    references: ReferencesSelector
    images_per_reference: Limit | None = None

    def __str__(self) -> str:
        refs = self.references
        description = f"references.{refs.kind}: {refs.pattern.pattern}"
        if refs.limit and not refs.limit.is_empty():
            description += f" ({refs.limit})"
        if self.images_per_reference and not self.images_per_reference.is_empty():
            description += f", images per reference: {self.images_per_reference}"
        return description


class Commit(BaseModel):
    hash: str
    committed_at: datetime


class Reference(BaseModel):
    kind: ReferenceKind
    name: str
    short_name: str
    target: str
    head_commit: Commit
    created_at: datetime
    scan_depth_limit: int
    images_cleanup_keep_policy: Limit | None = None

    @property
    def key(self) -> tuple[str, str, str]:
        return self.kind.value, self.target, self.name

    @property
    def name_without_remote(self) -> str:
        if self.kind == ReferenceKind.TAG:
            return self.short_name
        return self.short_name.split("/", 1)[-1]

    def __str__(self) -> str:
        policy = self.images_cleanup_keep_policy
        if policy and not policy.is_empty():
            return f"{self.short_name} ({policy})"
        return self.short_name


class Image(BaseModel):
    id: str
    commit: str
    created_at: datetime
    tag: str | None = None

    @property
    def key(self) -> str:
        return self.id


class ReferenceInfo(BaseModel):
    name: str
    scan_depth_limit: int
    images_kept: list[str]
    images_kept_count: int


class CleanupResult(BaseModel):
    job_name: str
    mode: WorkMode
    started_at: datetime
    finished_at: datetime
    success: bool
    errors: list[str]
    references: list[ReferenceInfo]
    images_total_count: int
    images_to_delete: list[dict[str, datetime | None]]
    images_to_delete_count: int
    images_saved_count: int
