"""Service action API - manual checks and lifecycle."""
from fastapi import APIRouter, HTTPException

from ..schemas.service import CheckResponse, LifecycleResponse
from ..services.lifecycle import service_lifecycle
from ..services.scheduler import scheduler_service

router = APIRouter(prefix="/api/services", tags=["services"])


@router.post("/{service_id}/check", response_model=CheckResponse)
async def check_service(service_id: int):
    """Run a check for a service now, outside its schedule."""
    outcome = await scheduler_service.check_now(service_id)
    if outcome is None:
        raise HTTPException(status_code=404, detail="Service not found or not active")

    service = outcome.service
    return CheckResponse(
        service_id=service.id,
        status=outcome.evaluation.new_status,
        previous_status=outcome.evaluation.previous_status,
        response_time=outcome.result.response_time_ms,
        detail=outcome.evaluation.detail,
        uptime=service.uptime,
        checked_at=service.last_checked,
        ssl_days_remaining=service.ssl_days_remaining,
    )


@router.delete("/{service_id}", response_model=LifecycleResponse)
async def delete_service(service_id: int):
    """Move a service to the trash. History is kept."""
    service = await service_lifecycle.soft_delete(service_id)
    if not service:
        raise HTTPException(status_code=404, detail="Service not found")
    return LifecycleResponse.model_validate(service)


@router.post("/{service_id}/restore", response_model=LifecycleResponse)
async def restore_service(service_id: int):
    """Restore a service from the trash and resume checks."""
    service = await service_lifecycle.restore(service_id)
    if not service:
        raise HTTPException(status_code=404, detail="Service not found")
    return LifecycleResponse.model_validate(service)


@router.delete("/{service_id}/permanent", status_code=204)
async def purge_service(service_id: int):
    """Permanently delete a service with all of its logs and metrics."""
    if not await service_lifecycle.purge(service_id):
        raise HTTPException(status_code=404, detail="Service not found")
