from typing import Annotated

from fastapi import APIRouter, Depends

from cascade_categorizer.api.dependencies import get_service
from cascade_categorizer.api.schemas import CorrectionRequest
from cascade_categorizer.logger import get_logger
from cascade_categorizer.manager import CategorizerService

logger = get_logger(__name__)

router = APIRouter()


@router.post("/corrections", status_code=202)
async def submit_correction(
    req: CorrectionRequest,
    service: Annotated[CategorizerService, Depends(get_service)],
) -> dict[str, str]:
    service.submit_correction(req.record_id, req.predicted_category_id, req.actual_category_id)
    logger.info(
        "[LEARN] Correction queued for %s: %s -> %s",
        req.record_id,
        req.predicted_category_id or "-",
        req.actual_category_id,
    )
    return {"status": "queued", "record_id": req.record_id}
