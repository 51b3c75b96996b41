"""
Pydantic models for tasktrail input validation and result shapes.

Input models (``*Create`` / ``*Update`` / ``*Query``) reject unknown fields
and normalise enum spellings ("in-progress" -> "in_progress"). Record models
mirror the rows the store returns.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from tasktrail.errors import ValidationError

M = TypeVar("M", bound=BaseModel)


class TaskStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    WONT_FIX = "wont_fix"
    ARCHIVED = "archived"


class EpicStatus(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


# Entity kinds as they appear in events, listings and search results.
PROJECT = "project"
EPIC = "epic"
TASK = "task"
SUBTASK = "subtask"
COMMENT = "comment"
DEPENDENCY = "dependency"

EVENT_ENTITY_TYPES = (PROJECT, EPIC, TASK, SUBTASK, COMMENT, DEPENDENCY)
LIST_ENTITY_TYPES = (EPIC, TASK, SUBTASK)
SEARCH_ENTITY_TYPES = (EPIC, TASK, SUBTASK, COMMENT)
SORT_FIELDS = ("created", "updated", "priority", "status", "title", "id")
SEARCH_MODES = ("keyword", "semantic", "hybrid")

DEFAULT_PRIORITY = 2
DEFAULT_PAGE = 1
LIST_PAGE_SIZE = 50
SEARCH_PAGE_SIZE = 20
HISTORY_PAGE_SIZE = 50

# Statuses after which a dependency no longer blocks its dependents.
DONE_STATUSES = (TaskStatus.COMPLETED.value, TaskStatus.WONT_FIX.value, TaskStatus.ARCHIVED.value)


def normalize_status(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower().replace("-", "_")
    return value


def _clean_title(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
    return value


def _clean_tags(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.split(",")
    tags = set()
    for tag in value:
        if not isinstance(tag, str) or not tag.strip():
            raise ValueError("all tags must be non-empty strings")
        tags.add(tag.strip())
    return sorted(tags)


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

Title = Annotated[str, BeforeValidator(_clean_title), Field(min_length=1, max_length=500)]
Text = Annotated[str, BeforeValidator(_clean_title), Field(min_length=1)]
Priority = Annotated[int, Field(ge=0, le=5)]
Tags = Annotated[List[str], BeforeValidator(_clean_tags)]
TaskStatusIn = Annotated[TaskStatus, BeforeValidator(normalize_status)]
EpicStatusIn = Annotated[EpicStatus, BeforeValidator(normalize_status)]


class _Input(BaseModel):
    model_config = ConfigDict(extra="forbid", use_enum_values=True)


class EpicCreate(_Input):
    title: Title
    description: Optional[str] = None
    status: EpicStatusIn = EpicStatus.TODO
    priority: Priority = DEFAULT_PRIORITY


class EpicUpdate(_Input):
    title: Optional[Title] = None
    description: Optional[str] = None
    status: Optional[EpicStatusIn] = None
    priority: Optional[Priority] = None


class TaskCreate(_Input):
    title: Title
    description: Optional[str] = None
    status: TaskStatusIn = TaskStatus.TODO
    priority: Priority = DEFAULT_PRIORITY
    epic_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    tags: Optional[Tags] = None


class TaskUpdate(_Input):
    title: Optional[Title] = None
    description: Optional[str] = None
    status: Optional[TaskStatusIn] = None
    priority: Optional[Priority] = None
    epic_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    tags: Optional[Tags] = None


class CommentCreate(_Input):
    task_id: str = Field(min_length=1)
    author: Annotated[str, BeforeValidator(_clean_title), Field(min_length=1, max_length=200)]
    content: Text


class CommentUpdate(_Input):
    content: Text


class SortKey(_Input):
    field: str
    direction: Annotated[SortDirection, BeforeValidator(normalize_status)] = SortDirection.ASC

    @field_validator("field", mode="before")
    @classmethod
    def validate_field(cls, v):
        v = str(v).strip().lower()
        if v not in SORT_FIELDS:
            raise ValueError(f"invalid sort field {v!r}, valid fields: {', '.join(SORT_FIELDS)}")
        return v


class ListQuery(_Input):
    """Listing filter for QueryEngine.list()."""

    types: Optional[List[str]] = None
    statuses: Optional[List[str]] = None
    priorities: Optional[List[Priority]] = None
    where: Dict[str, Any] = Field(default_factory=dict)
    tags: Optional[Tags] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    sort: List[SortKey] = Field(default_factory=list)
    page: int = Field(DEFAULT_PAGE, ge=1)
    limit: int = Field(LIST_PAGE_SIZE, ge=1)

    @field_validator("types")
    @classmethod
    def validate_types(cls, v):
        if v is not None:
            for t in v:
                if t not in LIST_ENTITY_TYPES:
                    raise ValueError(f"invalid type {t!r}, valid types: {', '.join(LIST_ENTITY_TYPES)}")
        return v

    @field_validator("statuses", mode="before")
    @classmethod
    def validate_statuses(cls, v):
        if v is None:
            return v
        return [normalize_status(s) for s in v]


class HistoryQuery(_Input):
    """Audit log filter for AuditLog.query()."""

    entity_id: Optional[str] = None
    types: Optional[List[str]] = None
    actions: Optional[List[Action]] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    page: int = Field(DEFAULT_PAGE, ge=1)
    limit: int = Field(HISTORY_PAGE_SIZE, ge=1)

    @field_validator("types")
    @classmethod
    def validate_types(cls, v):
        if v is not None:
            for t in v:
                if t not in EVENT_ENTITY_TYPES:
                    raise ValueError(f"invalid type {t!r}, valid types: {', '.join(EVENT_ENTITY_TYPES)}")
        return v


class SearchQuery(_Input):
    """Search filter for SearchCoordinator.search()."""

    types: Optional[List[str]] = None
    status: Annotated[Optional[str], BeforeValidator(normalize_status)] = None
    mode: str = "hybrid"
    page: int = Field(DEFAULT_PAGE, ge=1)
    limit: int = Field(SEARCH_PAGE_SIZE, ge=1)
    threshold: Optional[float] = Field(None, ge=0.0, le=1.0)

    @field_validator("types")
    @classmethod
    def validate_types(cls, v):
        if v is not None:
            for t in v:
                if t not in SEARCH_ENTITY_TYPES:
                    raise ValueError(f"invalid type {t!r}, valid types: {', '.join(SEARCH_ENTITY_TYPES)}")
        return v

    @field_validator("mode", mode="before")
    @classmethod
    def validate_mode(cls, v):
        v = str(v).strip().lower()
        if v not in SEARCH_MODES:
            raise ValueError(f"invalid search mode {v!r}, valid modes: {', '.join(SEARCH_MODES)}")
        return v


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class Project(BaseModel):
    id: str
    name: str
    created_at: str
    updated_at: str


class Epic(BaseModel):
    id: str
    project_id: str
    title: str
    description: Optional[str] = None
    status: str
    priority: int
    created_at: str
    updated_at: str


class EpicCompletion(BaseModel):
    epic: Epic
    archived_tasks: List[str] = Field(default_factory=list)
    archived_subtasks: List[str] = Field(default_factory=list)


class Task(BaseModel):
    id: str
    project_id: str
    epic_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    status: str
    priority: int
    tags: List[str] = Field(default_factory=list)
    created_at: str
    updated_at: str

    @property
    def kind(self) -> str:
        return SUBTASK if self.parent_task_id else TASK


class Comment(BaseModel):
    id: str
    task_id: str
    author: str
    content: str
    created_at: str
    updated_at: str


class Dependency(BaseModel):
    id: str
    task_id: str
    depends_on_id: str
    created_at: str


class Event(BaseModel):
    id: int
    entity_type: str
    entity_id: str
    action: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str


class ListItem(BaseModel):
    type: str
    id: str
    title: str
    status: str
    priority: int
    parent_id: Optional[str] = None
    created_at: str
    updated_at: str


class ListPage(BaseModel):
    items: List[ListItem]
    total: int
    page: int
    limit: int


class HistoryPage(BaseModel):
    events: List[Event]
    total: int
    page: int
    limit: int


class ReadyTask(BaseModel):
    task: Task
    dependents: List[ListItem] = Field(default_factory=list)


class SearchHit(BaseModel):
    type: str
    id: str
    title: Optional[str] = None
    snippet: Optional[str] = None
    status: Optional[str] = None
    parent_id: Optional[str] = None
    score: float
    lexical_rank: Optional[int] = None
    semantic_rank: Optional[int] = None
    similarity: Optional[float] = None
    channels: List[str] = Field(default_factory=list)


class SearchPage(BaseModel):
    query: str
    mode: str
    results: List[SearchHit]
    total: int
    page: int
    limit: int
    semantic_enriched: bool


def parse_sort(spec: str) -> List[SortKey]:
    """Parse ``"priority:asc,created:desc"`` into sort keys (direction defaults to desc)."""
    keys: List[SortKey] = []
    for part in spec.split(","):
        part = part.strip()
        if not part:
            continue
        field, _, direction = part.partition(":")
        direction = direction.strip().lower()
        keys.append(parse_input(SortKey, {"field": field, "direction": "asc" if direction == "asc" else "desc"}))
    return keys


def page_bounds(page: int, limit: int) -> Tuple[int, int]:
    offset = (page - 1) * limit
    return offset, offset + limit


def parse_input(
    model_cls: Type[M],
    data: Dict[str, Any],
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
) -> M:
    """Build model_cls from data, translating pydantic errors into tasktrail ValidationError."""
    try:
        return model_cls(**data)
    except PydanticValidationError as e:
        err = e.errors()[0]
        field = ".".join(str(p) for p in err.get("loc", ())) or None
        msg = err.get("msg", "invalid value")
        raise ValidationError(
            f"Invalid {field}: {msg}" if field else msg,
            entity_type=entity_type,
            entity_id=entity_id,
            field=field.split(".")[0] if field else None,
        ) from None
