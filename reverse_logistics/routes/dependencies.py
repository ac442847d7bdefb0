# ==== SERVICE DEPENDENCIES ==== #

"""
FastAPI dependencies wiring the engines to the collaborator bundle.

Engines are process-wide singletons so the in-memory RTO rate limiters
keep their windows across requests; ``reset_engines`` drops them when the
collaborators are swapped (tests, shutdown).
"""

from typing import Optional

from fastapi import Query

from reverse_logistics.integrations.http_clients import get_collaborators
from reverse_logistics.services.disposition_engine import DispositionEngine
from reverse_logistics.services.ndr_pipeline import NDRPipeline
from reverse_logistics.services.return_engine import ReturnEngine
from reverse_logistics.services.rto_engine import RTOEngine
from reverse_logistics.settings import settings


_rto_engine: Optional[RTOEngine] = None
_disposition_engine: Optional[DispositionEngine] = None
_return_engine: Optional[ReturnEngine] = None
_ndr_pipeline: Optional[NDRPipeline] = None


def get_rto_engine() -> RTOEngine:
    global _rto_engine
    if _rto_engine is None:
        _rto_engine = RTOEngine(get_collaborators())
    return _rto_engine


def get_disposition_engine() -> DispositionEngine:
    global _disposition_engine
    if _disposition_engine is None:
        _disposition_engine = DispositionEngine(get_collaborators())
    return _disposition_engine


def get_return_engine() -> ReturnEngine:
    global _return_engine
    if _return_engine is None:
        _return_engine = ReturnEngine(get_collaborators())
    return _return_engine


def get_ndr_pipeline() -> NDRPipeline:
    global _ndr_pipeline
    if _ndr_pipeline is None:
        _ndr_pipeline = NDRPipeline(get_collaborators(), rto_engine=get_rto_engine())
    return _ndr_pipeline


def reset_engines() -> None:
    global _rto_engine, _disposition_engine, _return_engine, _ndr_pipeline
    _rto_engine = _disposition_engine = _return_engine = _ndr_pipeline = None


class PageParams:
    """``page`` and ``limit`` query parameters, clamped to the configured maximum."""

    def __init__(
        self,
        page: int = Query(1, ge=1, description="1-based page number"),
        limit: Optional[int] = Query(None, ge=1, description="Page size"),
    ):
        self.page = page
        self.limit = min(limit or settings.DEFAULT_PAGE_SIZE, settings.MAX_PAGE_SIZE)
