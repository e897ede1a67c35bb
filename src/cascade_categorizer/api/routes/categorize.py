import asyncio
from typing import Annotated

from fastapi import APIRouter, Depends

from cascade_categorizer.api.dependencies import get_service
from cascade_categorizer.api.schemas import BatchCategorizeRequest, CategorizeRequest
from cascade_categorizer.manager import CategorizerService
from cascade_categorizer.models import Category, ClassificationResult

router = APIRouter()


@router.post("/categorize", response_model=ClassificationResult)
async def categorize_transaction(
    req: CategorizeRequest,
    service: Annotated[CategorizerService, Depends(get_service)],
) -> ClassificationResult:
    return await asyncio.to_thread(service.classify, req.transaction)


@router.post("/categorize/batch", response_model=list[ClassificationResult])
async def categorize_batch(
    req: BatchCategorizeRequest,
    service: Annotated[CategorizerService, Depends(get_service)],
) -> list[ClassificationResult]:
    return await asyncio.to_thread(service.classify_batch, req.transactions)


@router.get("/categories")
async def get_categories(
    service: Annotated[CategorizerService, Depends(get_service)],
) -> list[Category]:
    return list(service.catalog)
