from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class ConvertRequest(BaseModel):
    path: str
    mime: Optional[str] = None
    identifier: Optional[str] = None


class ErrorOut(BaseModel):
    kind: str
    category: str
    detail: str = ""
    status_code: Optional[int] = None


class ConversionResultOut(BaseModel):
    id: str
    status: str
    state: str
    source: str
    output: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    cdn_location: Optional[Dict[str, Any]] = None
    cdn_error: Optional[ErrorOut] = None
    warnings: List[str] = Field(default_factory=list)


class FailureItem(BaseModel):
    id: str
    reason: str


class BatchStatsOut(BaseModel):
    processed: int
    success: int
    failed: int
    cdn_failed: int = 0
    cancelled: bool = False
    # per-item failure reasons, in completion order
    failures: List[FailureItem] = Field(default_factory=list)
    summary: str


class PurgeRequest(BaseModel):
    urls: List[str] = Field(min_length=1)


class PurgeOut(BaseModel):
    files: List[str]
    response: Dict[str, Any] = Field(default_factory=dict)


class HealthOut(BaseModel):
    status: str
    checks: Dict[str, Any]
    version: str
    timestamp: float


class MediaUrlOut(BaseModel):
    url: str
    fallback: bool = False
