"""FastAPI app (internal-only).

Thin JSON surface over the discovery pipeline for the platform's API layer.
Domain errors are mapped to HTTP status codes; response bodies are the wire
models dumped in camelCase.
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .domain.errors import CompetitorIntelError
from .domain.models import ErrorCode
from .lifespan import app_state
from .models.insight import BusinessContext
from .models.website import Offering
from .observability.logger import get_logger
from .utils.validators import normalize_domain

logger = get_logger(__name__)

app = FastAPI(title="Competitor Intelligence Service", version="0.1.0")

STATUS_BY_CODE: dict[str, int] = {
    ErrorCode.INVALID_INPUT.value: 400,
    ErrorCode.INVALID_URL.value: 400,
    ErrorCode.NOT_FOUND.value: 404,
    ErrorCode.ACCESS_DENIED.value: 403,
    ErrorCode.RATE_LIMITED.value: 429,
    ErrorCode.SERVER_ERROR.value: 502,
    ErrorCode.NETWORK_TIMEOUT.value: 504,
    ErrorCode.PARSE_FAILURE.value: 502,
    ErrorCode.LLM_REQUEST_FAILED.value: 502,
    ErrorCode.MODEL_SATURATION.value: 503,
    ErrorCode.CATALOG_ANALYSIS_FAILED.value: 422,
    ErrorCode.COMPETITOR_ANALYSIS_FAILED.value: 422,
    ErrorCode.DEADLINE_EXCEEDED.value: 504,
    ErrorCode.INTERNAL_ERROR.value: 500,
}


def status_for(error: CompetitorIntelError) -> int:
    return STATUS_BY_CODE.get(error.info.code, 500)


@app.exception_handler(CompetitorIntelError)
async def _domain_error_handler(request: Request, exc: CompetitorIntelError) -> JSONResponse:
    status = status_for(exc)
    log = logger.error if status >= 500 else logger.warning
    log("request_failed", path=request.url.path, error_code=exc.info.code, error=exc.info.message, detail=exc.info.detail)
    return JSONResponse(
        status_code=status,
        content={"errorCode": exc.info.code, "errorMessage": exc.info.message, "detail": exc.info.detail},
    )


def _service(name: str) -> Any:
    service = app_state.get(name)
    if service is None:
        raise HTTPException(status_code=503, detail=f"{name}_unavailable")
    return service


class WebsiteDiscoverRequest(BaseModel):
    url: str = Field(..., min_length=1)


class CompetitorDiscoverRequest(BaseModel):
    domain: str = Field(..., min_length=1)
    businessType: str = ""
    knownCompetitors: list[str] = []
    productCatalogUrl: str = Field(..., min_length=1)


class CompetitorAnalyzeRequest(BaseModel):
    domain: str = Field(..., min_length=1)
    businessDomain: str = Field(..., min_length=1)
    businessType: str = ""
    offerings: list[Offering] = []
    excludedHosts: list[str] = []


@app.get("/healthz")
async def healthz():
    router = app_state.get("router")
    return {"status": "ok", "models": [m.model_id for m in router.models] if router else []}


@app.post("/api/v1/website/discover")
async def discover_website(payload: WebsiteDiscoverRequest) -> dict:
    discovery = _service("website_discovery")
    content = await discovery.discover_website_content(payload.url)
    return content.to_wire()


@app.post("/api/v1/competitors/discover")
async def discover_competitors(payload: CompetitorDiscoverRequest) -> dict:
    orchestrator = _service("orchestrator")
    result = await orchestrator.discover_competitors(
        payload.domain,
        payload.businessType,
        payload.knownCompetitors,
        payload.productCatalogUrl,
    )
    return result.to_wire()


@app.post("/api/v1/competitors/analyze")
async def analyze_competitor(payload: CompetitorAnalyzeRequest) -> dict:
    analysis = _service("analysis")
    context = BusinessContext(
        domain=normalize_domain(payload.businessDomain),
        business_type=payload.businessType,
        offerings=payload.offerings,
        excluded_hosts=[normalize_domain(h) for h in payload.excludedHosts],
    )
    insight = await analysis.analyze_competitor(payload.domain, context)
    return insight.to_wire()
