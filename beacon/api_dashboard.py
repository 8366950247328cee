from datetime import timedelta

from fastapi import APIRouter, Depends

from .auth import Principal
from .db import utcnow
from .deps import Services, current_principal, get_services
from .schemas import log_out

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])

TIMEFRAMES = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}
DEFAULT_TIMEFRAME = "7d"


@router.get("/analytics")
def analytics(
    timeframe: str = DEFAULT_TIMEFRAME,
    principal: Principal = Depends(current_principal),
    services: Services = Depends(get_services),
):
    # unknown timeframes fall back to a week
    since = utcnow() - TIMEFRAMES.get(timeframe, TIMEFRAMES[DEFAULT_TIMEFRAME])
    activity = []
    for entry, device_name in services.registry.recent_activity(principal.user_id, since):
        item = log_out(entry)
        item["deviceName"] = device_name
        activity.append(item)
    return {
        "timeframe": timeframe,
        "devices": services.registry.statistics(principal.user_id),
        "commands": services.dispatcher.summary(principal.user_id, since),
        "recentActivity": activity,
    }
