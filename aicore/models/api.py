from typing import Any, Literal

from pydantic import BaseModel, Field


class SubmitRequest(BaseModel):
    operation: Literal["summarize", "sentiment", "embed", "moderate", "digest"]
    payload: dict[str, Any]
    priority: Literal["critical", "high", "normal", "low", "background"] = "normal"
    params: dict[str, Any] | None = None
    timeout_s: float | None = Field(default=None, gt=0, le=3600)


class SubmitResponse(BaseModel):
    request_id: str
    status: str


class RequestResult(BaseModel):
    request_id: str
    status: str
    operation: str
    fingerprint: str
    output: dict[str, Any]
    provider: str
    cached: bool
    cost_cents: float
    attempts: int


class CancelResponse(BaseModel):
    request_id: str
    cancelled: bool


class IngestItemModel(BaseModel):
    text: str = Field(min_length=1, max_length=8000)
    source_id: str = Field(min_length=1)
    created_at: float | None = None
    metadata: dict[str, str] = Field(default_factory=dict)


class IngestRequest(BaseModel):
    items: list[IngestItemModel] = Field(min_length=1, max_length=2000)


class SearchFiltersModel(BaseModel):
    date_from: float | None = None
    date_to: float | None = None
    author_id: str | None = None
    channel_id: str | None = None


class SearchRequest(BaseModel):
    query: str | None = None
    vector: list[float] | None = None
    limit: int = Field(default=20, ge=1, le=100)
    min_score: float = Field(default=0.0, ge=-1.0, le=1.0)
    rank_by: Literal["relevance", "date", "hybrid"] = "relevance"
    filters: SearchFiltersModel | None = None


class BudgetUpdate(BaseModel):
    limit_cents: float = Field(ge=0)


class CacheInvalidateRequest(BaseModel):
    pattern: str = Field(min_length=1)
