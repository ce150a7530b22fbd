from datetime import datetime
from typing import Optional, List, Dict, Any
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


# =========================
# Enums
# =========================
class QueryStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class AnalysisStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    CANCELED = "canceled"


IN_FLIGHT_ANALYSIS_STATUSES = (AnalysisStatus.QUEUED, AnalysisStatus.RUNNING)
TERMINAL_ANALYSIS_STATUSES = (
    AnalysisStatus.SUCCESS,
    AnalysisStatus.ERROR,
    AnalysisStatus.CANCELED,
)
TERMINAL_QUERY_STATUSES = (
    QueryStatus.SUCCEEDED,
    QueryStatus.FAILED,
    QueryStatus.CANCELED,
)


# =========================
# QUERY RECORD
# =========================
class QueryRecord(BaseModel):
    id: str
    organization: str
    analysis_id: str
    name: str
    position: int = 0
    sql: str
    status: QueryStatus
    external_handle: Optional[str] = None
    raw_result: Optional[List[Dict[str, Any]]] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_QUERY_STATUSES


# =========================
# ANALYSIS RECORD
# =========================
class AnalysisRecord(BaseModel):
    id: str
    organization: str
    kind: str
    target_key: str
    status: AnalysisStatus
    params: Optional[Dict[str, Any]] = None
    query_ids: List[str] = []
    result: Optional[Any] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ANALYSIS_STATUSES


# =========================
# ANALYSIS KINDS (request params)
# =========================
class DimensionSlicesParams(BaseModel):
    datasource_id: str = Field(min_length=1)
    exposure_query_id: str = Field(min_length=1)
    # Rows of (user_id, timestamp, <dimension columns>)
    exposure_sql: str = Field(min_length=1)
    dimensions: List[str] = Field(min_length=1)
    user_id_column: str = "user_id"
    lookback_days: int = Field(default=30, ge=1, le=365)
    end_date: Optional[datetime] = None


class MetricDefinition(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    # Must select a numeric "value" column and a "timestamp" column
    sql: str = Field(min_length=1)


class MetricAggregateParams(BaseModel):
    datasource_id: str = Field(min_length=1)
    metrics: List[MetricDefinition] = Field(min_length=1)
    lookback_days: int = Field(default=30, ge=1, le=365)
    end_date: Optional[datetime] = None


# =========================
# API
# =========================
class QueriesResponse(BaseModel):
    queries: List[Optional[QueryRecord]]


class TestQueryRequest(BaseModel):
    datasource_id: str
    query: str = Field(min_length=1)
    template_variables: Dict[str, Any] = {}


class TestQueryResponse(BaseModel):
    duration: float
    results: List[Dict[str, Any]] = []
    sql: str
    error: Optional[str] = None
