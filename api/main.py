"""FastAPI server for quotaflow."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Dict, Any, List

from fastapi import FastAPI, HTTPException, Header, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from quotaflow import (
    EnforcementGate,
    RecommendationEngine,
    SQLiteStorage,
    __version__,
)
from quotaflow.config import get_api_key, get_db_path
from quotaflow.errors import (
    InvalidOverrideConfiguration,
    InvalidTransition,
    NotFoundError,
    StorageUnavailable,
)
from quotaflow.models import CustomOverride, Recommendation
from quotaflow.reports import closed_period_usage, quota_status


def _require_api_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    api_key = get_api_key()
    if api_key and x_api_key != api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


def _gate() -> EnforcementGate:
    gate = EnforcementGate(SQLiteStorage(db_path=get_db_path()))
    gate.catalog.seed_defaults()
    return gate


app = FastAPI(title="quotaflow API", version=__version__)


@app.exception_handler(StorageUnavailable)
async def _storage_unavailable(request: Request, exc: StorageUnavailable) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": "Storage unavailable", "error": str(exc)})


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(InvalidTransition)
async def _invalid_transition(request: Request, exc: InvalidTransition) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(InvalidOverrideConfiguration)
async def _invalid_override(request: Request, exc: InvalidOverrideConfiguration) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


class CheckRequest(BaseModel):
    requested_qty: float = Field(1.0, ge=0)
    as_of: Optional[datetime] = None


class RecordRequest(BaseModel):
    actual_qty: float = Field(..., ge=0)
    as_of: Optional[datetime] = None


class AnalyzeRequest(BaseModel):
    window_days: int = Field(90, ge=1, le=730)
    as_of: Optional[datetime] = None


class StatusRequest(BaseModel):
    status: str = Field(..., pattern="^(viewed|accepted|dismissed)$")


class OverrideRequest(BaseModel):
    workspace_id: str = Field(..., min_length=1)
    limits: Dict[str, int]
    contract_start: datetime
    contract_end: Optional[datetime] = None
    base_plan_id: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    requested_by: Optional[str] = None
    notes: Optional[str] = None


class ApproveRequest(BaseModel):
    approved_by: str = Field(..., min_length=1)


class RejectRequest(BaseModel):
    rejected_by: Optional[str] = None


def _recommendation(rec: Recommendation) -> Dict[str, Any]:
    return {
        "recommendation_id": rec.recommendation_id,
        "subject_id": rec.subject_id,
        "current_plan_id": rec.current_plan_id,
        "recommended_plan_id": rec.recommended_plan_id,
        "reason": rec.reason.value,
        "confidence": rec.confidence,
        "monthly_cost_delta": rec.monthly_cost_delta,
        "status": rec.status.value,
        "bottlenecks": rec.bottlenecks,
        "benefits": rec.benefits,
        "growth_trend": rec.growth_trend,
        "created_at": rec.created_at.isoformat(),
        "expires_at": rec.expires_at.isoformat(),
    }


def _override(override: CustomOverride) -> Dict[str, Any]:
    return {
        "override_id": override.override_id,
        "workspace_id": override.workspace_id,
        "base_plan_id": override.base_plan_id,
        "limits": override.limits,
        "price": override.price,
        "status": override.status.value,
        "contract_start": override.contract_start.isoformat(),
        "contract_end": override.contract_end.isoformat() if override.contract_end else None,
        "approved_by": override.approved_by,
    }


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/plans", dependencies=[Depends(_require_api_key)])
def list_plans() -> List[Dict[str, Any]]:
    gate = _gate()
    return [
        {
            "plan_id": p.plan_id,
            "name": p.name,
            "code": p.code,
            "category": p.category.value,
            "price_monthly": p.price_monthly,
            "limits": p.limits,
            "priority_level": p.priority_level,
            "version": p.version,
        }
        for p in gate.catalog.list_plans(public_only=True)
    ]


@app.get("/quota/{subject_id}", dependencies=[Depends(_require_api_key)])
def get_quota_status(subject_id: str) -> Dict[str, Any]:
    gate = _gate()
    return quota_status(gate.ledger, gate.resolver, subject_id)


@app.get("/quota/{subject_id}/{resource}", dependencies=[Depends(_require_api_key)])
def probe_quota(subject_id: str, resource: str) -> Dict[str, Any]:
    decision = _gate().probe(subject_id, resource)
    return {
        "allowed": decision.allowed,
        "remaining": decision.remaining,
        "limit": decision.limit.to_raw() if decision.limit is not None else None,
        "period_end": decision.period_end.isoformat() if decision.period_end else None,
    }


@app.post("/quota/{subject_id}/{resource}/check", dependencies=[Depends(_require_api_key)])
def check_quota(subject_id: str, resource: str, req: CheckRequest) -> Dict[str, Any]:
    decision = _gate().check_quota(subject_id, resource, req.requested_qty, req.as_of)
    return decision.to_dict()


@app.post("/usage/{subject_id}/{resource}/record", dependencies=[Depends(_require_api_key)])
def record_usage(subject_id: str, resource: str, req: RecordRequest) -> Dict[str, Any]:
    try:
        consumed = _gate().record_usage(subject_id, resource, req.actual_qty, req.as_of)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"subject_id": subject_id, "resource": resource, "consumed": consumed}


@app.get("/usage/{subject_id}/history", dependencies=[Depends(_require_api_key)])
def usage_history(subject_id: str) -> Dict[str, Any]:
    gate = _gate()
    return {"subject_id": subject_id, "periods": closed_period_usage(gate.ledger, gate.resolver, subject_id)}


@app.get("/recommendations/{subject_id}", dependencies=[Depends(_require_api_key)])
def get_recommendation(subject_id: str) -> Dict[str, Any]:
    gate = _gate()
    rec = RecommendationEngine(gate.storage, gate.catalog).current(subject_id)
    if rec is None:
        raise HTTPException(status_code=404, detail="No recommendation")
    return _recommendation(rec)


@app.post("/recommendations/{subject_id}/analyze", dependencies=[Depends(_require_api_key)])
def analyze(subject_id: str, req: AnalyzeRequest) -> Dict[str, Any]:
    gate = _gate()
    rec = RecommendationEngine(gate.storage, gate.catalog).analyze(subject_id, req.window_days, req.as_of)
    return {"recommendation": _recommendation(rec) if rec else None}


@app.post("/recommendations/{recommendation_id}/status", dependencies=[Depends(_require_api_key)])
def set_recommendation_status(recommendation_id: str, req: StatusRequest) -> Dict[str, Any]:
    gate = _gate()
    rec = RecommendationEngine(gate.storage, gate.catalog).set_status(recommendation_id, req.status)
    return _recommendation(rec)


@app.post("/overrides", dependencies=[Depends(_require_api_key)])
def request_override(req: OverrideRequest) -> Dict[str, Any]:
    override = _gate().resolver.request_override(
        req.workspace_id,
        req.limits,
        contract_start=req.contract_start,
        contract_end=req.contract_end,
        base_plan_id=req.base_plan_id,
        price=req.price,
        requested_by=req.requested_by,
        notes=req.notes,
    )
    return _override(override)


@app.post("/overrides/{override_id}/approve", dependencies=[Depends(_require_api_key)])
def approve_override(override_id: str, req: ApproveRequest) -> Dict[str, Any]:
    return _override(_gate().resolver.approve_override(override_id, req.approved_by))


@app.post("/overrides/{override_id}/reject", dependencies=[Depends(_require_api_key)])
def reject_override(override_id: str, req: RejectRequest) -> Dict[str, Any]:
    return _override(_gate().resolver.reject_override(override_id, req.rejected_by))
