"""
Quota-guarded AI operations.

Each call consumes one use of its feature before the AI worker is called.
The quota stays consumed if the worker fails afterwards.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from cutglue.auth.dependencies import get_current_user_id
from cutglue.models.billing import Feature
from cutglue.services import BillingServices, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/ai", tags=["AI"])

AI_FEATURES = frozenset({Feature.AI_GENERATION, Feature.AI_ANALYSIS})


class GenerationRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=4000)
    options: dict[str, Any] = Field(default_factory=dict)


class GenerationResponse(BaseModel):
    feature: Feature
    result: dict[str, Any]
    used_today: int
    used_this_month: int


@router.post("/{feature}", response_model=GenerationResponse)
async def run_ai_operation(
    feature: Feature,
    body: GenerationRequest,
    user_id: str = Depends(get_current_user_id),
    services: BillingServices = Depends(get_services),
) -> GenerationResponse:
    """
    Run one metered AI operation.

    Raises:
        404: feature is not an AI operation
        422: prompt is blank (nothing consumed)
        429: quota exhausted
        502: AI worker failed (quota consumed)
    """
    if feature not in AI_FEATURES:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{feature.value} is not an AI operation",
        )

    def validate() -> None:
        if not body.prompt.strip():
            raise HTTPException(
                status_code=422,
                detail="Prompt must not be blank",
            )

    payload = {"user_id": user_id, "prompt": body.prompt, "options": body.options}
    result = await services.enforcer.guarded(
        user_id,
        feature,
        lambda: services.generation.generate(feature, payload),
        validate=validate,
    )

    usage = await services.ledger.get_usage(user_id, feature)
    return GenerationResponse(
        feature=feature,
        result=result,
        used_today=usage.used_today,
        used_this_month=usage.used_this_month,
    )
