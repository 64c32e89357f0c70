from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from fxengine.core.errors import ConfigurationError
from fxengine.models.constants import SOURCE_USER
from fxengine.models.rates import RateRecord, scope_for
from fxengine.services.engine import RateEngine, get_engine

"""Rates router: conversion, sync control, provider passthroughs, overrides.

Endpoints:
    - GET  /rates/convert          -> convert an amount (never fails on missing rate)
    - GET  /rates/sync/status      -> scheduler status and provider quota
    - POST /rates/sync             -> manual sync of one base currency
    - GET  /rates/quota            -> provider quota
    - GET  /rates/currencies       -> provider supported codes
    - GET  /rates/history          -> cached rate rows, newest first
    - POST /rates/convert/batch    -> convert many amounts, per-item errors
    - POST /rates/import           -> fetch and cache a full table for one base
    - POST /rates/overrides        -> manual override {base, target, rate, ttl_seconds}
    - POST /rates/overrides/bulk   -> create tenant rates, per-row errors
    - DELETE /rates/overrides/{id} -> retire a tenant rate (soft delete)

Handlers are plain `def` so FastAPI runs the blocking store / provider calls in
its threadpool.
"""

router = APIRouter(prefix="/rates", tags=["rates"])


def require_api_key(engine: RateEngine = Depends(get_engine)) -> RateEngine:
    if not engine.config.has_api_key:
        raise ConfigurationError("exchange rate API key is not configured")
    return engine


class ConvertResponse(BaseModel):
    original_amount: float
    original_currency: str
    converted_amount: float
    target_currency: str
    rate: Optional[float] = None
    tier: str
    converted: bool


class ManualSyncPayload(BaseModel):
    base_currency: str = Field("USD", description="Base currency to refresh")


class OverrideSetPayload(BaseModel):
    base_currency: str = Field(..., description="Base currency (e.g. USD)")
    target_currency: str = Field(..., description="Target currency (e.g. EUR)")
    rate: float = Field(..., gt=0, description="Units of target per 1 unit of base")
    organization_id: Optional[int] = Field(
        None, description="Tenant scope; omit for a global override"
    )
    ttl_seconds: Optional[int] = Field(
        None,
        gt=0,
        le=30 * 86400,
        description="Override TTL seconds (default 24h, max 30 days)",
    )


class BatchItemPayload(BaseModel):
    amount: float = Field(..., ge=0)
    from_currency: str = Field(..., min_length=3, max_length=3)
    to_currency: str = Field(..., min_length=3, max_length=3)


class BatchConvertPayload(BaseModel):
    organization_id: Optional[int] = None
    conversions: List[BatchItemPayload] = Field(..., min_length=1, max_length=100)


class BulkRateItem(BaseModel):
    base_currency: Any = None
    target_currency: Any = None
    rate: Any = None


class BulkCreatePayload(BaseModel):
    organization_id: int
    rates: List[BulkRateItem] = Field(..., min_length=1, max_length=500)
    ttl_seconds: Optional[int] = Field(None, gt=0, le=30 * 86400)


def _convert_response(result) -> ConvertResponse:
    return ConvertResponse(
        original_amount=result.original_amount,
        original_currency=result.original_currency.upper(),
        converted_amount=result.converted_amount,
        target_currency=result.target_currency.upper(),
        rate=result.rate,
        tier=result.tier,
        converted=result.converted,
    )


@router.get("/convert", response_model=ConvertResponse, summary="Convert an amount")
def convert(
    amount: float = Query(..., ge=0),
    from_currency: str = Query(..., min_length=3, max_length=3),
    to_currency: str = Query(..., min_length=3, max_length=3),
    organization_id: Optional[int] = Query(None),
    engine: RateEngine = Depends(get_engine),
):
    result = engine.resolver.convert_detailed(
        amount, from_currency, to_currency, organization_id
    )
    return _convert_response(result)


@router.post("/convert/batch", summary="Convert several amounts")
def convert_batch(
    payload: BatchConvertPayload,
    engine: RateEngine = Depends(get_engine),
) -> Dict[str, Any]:
    items = engine.resolver.convert_batch(
        [(c.amount, c.from_currency, c.to_currency) for c in payload.conversions],
        payload.organization_id,
    )
    return {
        "results": [
            {
                "amount": item.amount,
                "from_currency": item.from_currency,
                "to_currency": item.to_currency,
                "result": _convert_response(item.result).model_dump() if item.result else None,
                "error": item.error,
            }
            for item in items
        ],
        "converted": sum(1 for item in items if item.result and item.result.converted),
    }


@router.get("/sync/status", summary="Background sync status")
def sync_status(engine: RateEngine = Depends(get_engine)) -> Dict[str, Any]:
    return engine.scheduler.get_sync_status()


@router.post("/sync", summary="Manually refresh one base currency")
def manual_sync(
    payload: ManualSyncPayload,
    engine: RateEngine = Depends(require_api_key),
) -> Dict[str, Any]:
    ok = engine.scheduler.trigger_manual_sync(payload.base_currency)
    return {"success": ok, "base_currency": payload.base_currency.upper()}


@router.get("/quota", summary="Provider request quota")
def quota(engine: RateEngine = Depends(require_api_key)) -> Dict[str, Any]:
    info = engine.client.fetch_quota()
    return {**info.as_status(), "refresh_day_of_month": info.refresh_day_of_month}


@router.get("/currencies", summary="Currencies supported by the provider")
def currencies(engine: RateEngine = Depends(require_api_key)) -> Dict[str, Any]:
    codes = engine.client.fetch_supported_codes()
    return {
        "count": len(codes),
        "currencies": [{"code": code, "name": name} for code, name in codes],
    }


@router.get("/history", response_model=List[RateRecord], summary="Cached rate rows")
def history(
    base: Optional[str] = Query(None, min_length=3, max_length=3),
    target: Optional[str] = Query(None, min_length=3, max_length=3),
    organization_id: Optional[int] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    engine: RateEngine = Depends(get_engine),
):
    return engine.store.history(base, target, organization_id, limit)


@router.post("/overrides", response_model=RateRecord, summary="Set a manual rate override")
def set_override(
    payload: OverrideSetPayload,
    engine: RateEngine = Depends(get_engine),
):
    ttl = (
        timedelta(seconds=payload.ttl_seconds)
        if payload.ttl_seconds
        else engine.config.override_ttl
    )
    return engine.store.upsert(
        payload.organization_id,
        payload.base_currency,
        payload.target_currency,
        payload.rate,
        SOURCE_USER,
        ttl,
        is_custom=True,
    )



@router.post("/overrides/bulk", summary="Create several tenant rates")
def bulk_create_overrides(
    payload: BulkCreatePayload,
    engine: RateEngine = Depends(get_engine),
) -> Dict[str, Any]:
    ttl = (
        timedelta(seconds=payload.ttl_seconds)
        if payload.ttl_seconds
        else engine.config.override_ttl
    )
    created, errors = engine.store.create_many(
        payload.organization_id,
        [item.model_dump() for item in payload.rates],
        SOURCE_USER,
        ttl,
    )
    return {
        "created": len(created),
        "rates": [row.model_dump(mode="json") for row in created],
        "errors": errors,
    }


@router.delete("/overrides/{rate_id}", summary="Retire a tenant rate")
def delete_override(
    rate_id: int,
    organization_id: int = Query(...),
    engine: RateEngine = Depends(get_engine),
) -> Dict[str, Any]:
    row = engine.store.get(rate_id)
    if row is None or row.scope != scope_for(organization_id):
        raise HTTPException(status_code=404, detail=f"exchange rate {rate_id} not found")
    engine.store.deactivate([rate_id])
    return {"success": True, "id": rate_id}


@router.post("/import", summary="Fetch and cache every rate for one base")
def import_rates(
    payload: ManualSyncPayload,
    engine: RateEngine = Depends(require_api_key),
) -> Dict[str, Any]:
    latest = engine.client.fetch_latest(payload.base_currency)
    return {
        "base_currency": latest.base,
        "imported_rates": latest.cached,
        "last_update": latest.time_last_update,
        "next_update": latest.time_next_update,
    }
