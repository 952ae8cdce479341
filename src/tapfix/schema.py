from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel


class RewriteRequestDTO(BaseModel):
    paths: List[str]
    write: bool = False
    target_method: Optional[str] = None
    replacement_method: Optional[str] = None
    receiver_types: Optional[List[str]] = None
    strict_receiver: Optional[bool] = None
    error_type: Optional[str] = None
    element_type_fallback: Optional[str] = None
    exclude: Optional[List[str]] = None


class TextEditDTO(BaseModel):
    path: str
    start: Tuple[int, int]
    end: Tuple[int, int]
    replacement: str


class SiteReportDTO(BaseModel):
    path: str
    line: int
    column: int
    callback: str
    kind: str = ""
    status: str
    reason: str = ""
    listener: str = ""
    buckets: Dict[str, List[str]] = {}


class RewriteResponse(BaseModel):
    edits: List[TextEditDTO] = []
    sites: List[SiteReportDTO] = []
    warnings: List[str] = []
    errors: List[str] = []
