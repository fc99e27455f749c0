"""Analytics routes — KPI summary for reviewers and admins."""

from fastapi import APIRouter, Depends, Query

from ...auth.session import SessionContext
from ...dependencies import get_analytics_service, get_session_context

router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.get("/")
async def get_analytics(
    date_range: str = Query("7d", pattern=r"^(7d|30d|month|year)$"),
    session: SessionContext = Depends(get_session_context),
):
    return await get_analytics_service().get_analytics(date_range, session)
