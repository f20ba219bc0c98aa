from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel
from typing import Optional, List, Any, Type, TypeVar, Literal
from urllib.parse import urlparse
from datetime import datetime, date
from enum import Enum

from ecoticker.errors import ValidationError


# ─── Enums ───
class Urgency(str, Enum):
    breaking = "breaking"
    critical = "critical"
    moderate = "moderate"
    informational = "informational"


Category = Literal[
    "air_quality", "deforestation", "ocean", "climate", "pollution",
    "biodiversity", "wildlife", "energy", "waste", "water",
]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _check_http_url(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    parsed = urlparse(value)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("Invalid url")
    return value


# ─── Article Schemas ───
class ArticleCreate(CamelModel):
    topic_id: int = Field(gt=0)
    title: str = Field(min_length=1, max_length=500)
    url: str = Field(max_length=2000)
    source: Optional[str] = Field(default=None, max_length=200)
    summary: Optional[str] = Field(default=None, max_length=5000)
    image_url: Optional[str] = Field(default=None, max_length=2000)
    published_at: Optional[datetime] = None

    check_urls = field_validator("url", "image_url")(_check_http_url)


class ArticleUpdate(CamelModel):
    topic_id: Optional[int] = Field(default=None, gt=0)
    title: Optional[str] = Field(default=None, min_length=1, max_length=500)
    url: Optional[str] = Field(default=None, max_length=2000)
    source: Optional[str] = Field(default=None, max_length=200)
    summary: Optional[str] = Field(default=None, max_length=5000)
    image_url: Optional[str] = Field(default=None, max_length=2000)
    published_at: Optional[datetime] = None

    check_urls = field_validator("url", "image_url")(_check_http_url)


class ArticleDelete(CamelModel):
    ids: Optional[List[int]] = None
    url: Optional[str] = Field(default=None, max_length=2000)
    topic_id: Optional[int] = Field(default=None, gt=0)
    source: Optional[str] = Field(default=None, max_length=200)

    @field_validator("ids")
    @classmethod
    def _positive_ids(cls, v):
        if v is not None and any(i <= 0 for i in v):
            raise ValueError("ids must be positive integers")
        return v

    @model_validator(mode="after")
    def _require_filter(self):
        if not (self.ids or self.url or self.topic_id or self.source):
            raise ValueError("Must provide at least one filter: ids, url, topicId, or source")
        return self


# ─── Topic Schemas ───
class TopicUpdate(CamelModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    category: Optional[Category] = None
    region: Optional[str] = Field(default=None, max_length=200)
    impact_summary: Optional[str] = Field(default=None, max_length=5000)
    image_url: Optional[str] = Field(default=None, max_length=2000)
    hidden: Optional[bool] = None

    check_urls = field_validator("image_url")(_check_http_url)

    @model_validator(mode="after")
    def _require_change(self):
        if not self.model_fields_set:
            raise ValueError("Must provide at least one field to update")
        return self


class TopicDelete(CamelModel):
    ids: Optional[List[int]] = None
    article_count: Optional[int] = Field(default=None, ge=0)
    dry_run: bool = False

    @field_validator("ids")
    @classmethod
    def _positive_ids(cls, v):
        if v is not None and any(i <= 0 for i in v):
            raise ValueError("ids must be positive integers")
        return v

    @model_validator(mode="after")
    def _require_filter(self):
        if self.ids is None and self.article_count is None:
            raise ValueError("Must provide either ids array or articleCount")
        return self


# ─── Read API Schemas ───
class HealthResponse(CamelModel):
    last_batch_at: Optional[date] = None
    is_stale: bool


class TickerItem(CamelModel):
    name: str
    slug: str
    score: int
    change: int


class TickerResponse(BaseModel):
    items: List[TickerItem]


class MoverItem(CamelModel):
    name: str
    slug: str
    current_score: int
    previous_score: int
    change: int
    urgency: Urgency


class MoversResponse(BaseModel):
    movers: List[MoverItem]


class BatchRunResponse(CamelModel):
    message: str
    task_id: str
    status: str


# ─── Validation ───
M = TypeVar("M", bound=BaseModel)


def format_errors(exc: PydanticValidationError) -> list[str]:
    """One 'field.path: message' string per problem; model-level errors use 'root'."""
    messages = []
    for err in exc.errors():
        path = ".".join(str(p) for p in err["loc"]) or "root"
        msg = err["msg"]
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        messages.append(f"{path}: {msg}")
    return messages


def validate(schema: Type[M], payload: Any) -> M:
    """Validate a request payload against a schema without mutating it.

    Returns the validated model, or raises ValidationError carrying the
    field-path messages.
    """
    try:
        return schema.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError(format_errors(e)) from e
