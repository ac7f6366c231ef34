"""Plan catalog endpoint."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db
from app.billing.plans import list_active_plans
from app.schemas.billing import PlanResponse, PlansListResponse

router = APIRouter(prefix="/api/v1/plans", tags=["plans"])


@router.get("", response_model=PlansListResponse)
async def list_plans(db: AsyncSession = Depends(get_db)) -> PlansListResponse:
    """List active plans (public, no auth required)."""
    plans = await list_active_plans(db)
    return PlansListResponse(plans=[PlanResponse.model_validate(p) for p in plans])
