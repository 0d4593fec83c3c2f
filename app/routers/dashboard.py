from fastapi import APIRouter, Depends, HTTPException, status

from app.clients.crm import CRMClient
from app.core.logging import logger
from app.dependencies.auth import get_crm_client, require_permission
from app.schemas.dashboard import DashboardOverview
from app.services.dashboard import DashboardLoader, DashboardLoadError

router = APIRouter(prefix="/api/v1/dashboard", tags=["dashboard"])


@router.get("", response_model=DashboardOverview)
async def get_dashboard(
    current_user: dict = Depends(require_permission("stats_view")),
    client: CRMClient = Depends(get_crm_client),
):
    """Aggregate stats and the recent activity feed. Retrying is just calling again."""
    loader = DashboardLoader(client)
    try:
        return await loader.load()
    except DashboardLoadError as e:
        logger.warning("Dashboard unavailable", user_id=current_user.get("_id"), error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
