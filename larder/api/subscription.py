"""
Subscription API routes.

- GET  /api/subscription: resolved entitlement and trial status
- POST /api/subscription/trial: start the one-time trial
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from larder.api.deps import get_gateway
from larder.features.entitlements.service import EntitlementResolver
from larder.models.entitlement import Entitlement, TrialStatus

router = APIRouter(prefix="/api/subscription", tags=["subscription"])


class SubscriptionResponse(BaseModel):
    entitlement: Entitlement
    trial: TrialStatus


class StartTrialRequest(BaseModel):
    plan_id: str = "premium_monthly"


@router.get("", response_model=SubscriptionResponse)
async def get_subscription(gateway=Depends(get_gateway)):
    resolver = EntitlementResolver(gateway)
    return SubscriptionResponse(
        entitlement=await resolver.resolve(),
        trial=await resolver.trial_status(),
    )


@router.post("/trial", response_model=Entitlement)
async def start_trial(request: StartTrialRequest, gateway=Depends(get_gateway)):
    return await EntitlementResolver(gateway).start_trial(request.plan_id)
