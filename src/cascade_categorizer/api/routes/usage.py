from typing import Annotated, Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from cascade_categorizer.api.dependencies import get_service
from cascade_categorizer.manager import CategorizerService
from cascade_categorizer.models import UsageReport

router = APIRouter()


@router.get("/usage", response_model=UsageReport)
async def get_usage(
    service: Annotated[CategorizerService, Depends(get_service)],
) -> UsageReport:
    return service.usage_report()


@router.get("/metrics")
async def get_metrics(
    service: Annotated[CategorizerService, Depends(get_service)],
) -> dict[str, Any]:
    return service.metrics()


@router.get("/health")
async def get_health(
    service: Annotated[CategorizerService, Depends(get_service)],
) -> JSONResponse:
    health = service.health()
    status_code = 200 if health["status"] != "unhealthy" else 503
    return JSONResponse(status_code=status_code, content=health)
