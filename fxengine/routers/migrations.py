from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from fxengine.services.engine import RateEngine, get_engine

router = APIRouter(prefix="/migrations", tags=["migrations"])


class MigrationPayload(BaseModel):
    target_currency: str = Field(..., min_length=3, max_length=3)


@router.get("/users/{user_id}/preview", summary="Count records a migration would convert")
def preview_user(
    user_id: int,
    target_currency: str = Query(..., min_length=3, max_length=3),
    engine: RateEngine = Depends(get_engine),
) -> Dict[str, Any]:
    return asdict(engine.migrations.preview(user_id, target_currency))


@router.post("/users/{user_id}", summary="Re-denominate a user's records")
def migrate_user(
    user_id: int,
    payload: MigrationPayload,
    engine: RateEngine = Depends(get_engine),
) -> Dict[str, Any]:
    result = engine.migrations.migrate_user(user_id, payload.target_currency)
    return {
        "user_id": user_id,
        "target_currency": payload.target_currency.upper(),
        **asdict(result),
    }


@router.post(
    "/organizations/{organization_id}",
    summary="Re-denominate every user's records in an organization",
)
def migrate_organization(
    organization_id: int,
    payload: MigrationPayload,
    engine: RateEngine = Depends(get_engine),
) -> Dict[str, Any]:
    result = engine.migrations.migrate_organization(
        organization_id, payload.target_currency
    )
    return {
        "organization_id": organization_id,
        "target_currency": payload.target_currency.upper(),
        **asdict(result),
    }
