from dataclasses import asdict

from fastapi import APIRouter, Depends

from atspect.dependencies import get_container
from atspect.routers.auth_deps import get_current_user
from atspect.schemas.auth import CurrentUser
from atspect.services.container import ServiceContainer

router = APIRouter(prefix="/status")


@router.get("")
async def get_status(
    container: ServiceContainer = Depends(get_container),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Connectivity, dependency health and circuit breaker state."""
    report = await container.health.test_all_connections()
    return {
        "is_online": container.monitor.is_online,
        "health": asdict(report),
        "circuit_breakers": container.health.circuit_status(),
    }


@router.post("/reset")
def reset_circuit_breakers(
    container: ServiceContainer = Depends(get_container),
    current_user: CurrentUser = Depends(get_current_user),
):
    container.health.reset_circuit_breakers()
    return {"success": True, "circuit_breakers": container.health.circuit_status()}
