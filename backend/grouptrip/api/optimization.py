from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
import structlog

from grouptrip.api.schemas import OptimizationResultResponse, OptimizeRequest
from grouptrip.core.errors import ErrorKind
from grouptrip.core.governor import performance_timer
from grouptrip.core.models import ResultStatus
from grouptrip.core.pipeline import TripOptimizationService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/groups", tags=["optimization"])

# Error kinds that map to a non-200 response; everything else is a planning
# outcome the client renders from the body.
ERROR_STATUS_CODES = {
    ErrorKind.PERMISSION_DENIED: status.HTTP_403_FORBIDDEN,
    ErrorKind.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorKind.UPSTREAM_DATA_ERROR: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def get_optimization_service(request: Request) -> TripOptimizationService:
    service = getattr(request.app.state, "optimization_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Optimization service is not configured",
        )
    return service


@router.post("/{group_id}/optimize", response_model=OptimizationResultResponse)
async def optimize_group_trip(
    group_id: str,
    payload: OptimizeRequest,
    service: TripOptimizationService = Depends(get_optimization_service),
):
    """Plan the group's trip and return the route with its daily schedules"""
    async with performance_timer(f"optimize_group_trip:{group_id}"):
        result = await service.optimize(group_id, payload.requester_id, payload.options)

    status_code = status.HTTP_200_OK
    if result.status == ResultStatus.ERROR and result.error is not None:
        status_code = ERROR_STATUS_CODES.get(result.error.kind, status.HTTP_200_OK)
        logger.info("optimization_request_failed", error_kind=result.error.kind.value, status_code=status_code)

    body = OptimizationResultResponse.from_result(result)
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json", by_alias=True))


@router.get("/optimizer/statistics")
async def optimizer_statistics(service: TripOptimizationService = Depends(get_optimization_service)):
    """Moving-average stage timings across recent optimizations"""
    return {"stages": service.stats_store.snapshot(), "records": len(service.stats_store)}
