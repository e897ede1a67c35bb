from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException

from cascade_categorizer.api.dependencies import get_training_manager
from cascade_categorizer.api.schemas import TrainRequest
from cascade_categorizer.manager import validate
from cascade_categorizer.services.training import TrainingManager

router = APIRouter()


@router.post("/train")
async def train_models(
    req: TrainRequest,
    training_manager: Annotated[TrainingManager, Depends(get_training_manager)],
) -> dict[str, Any]:
    if training_manager.active:
        raise HTTPException(status_code=409, detail="Training in progress")
    for sample in req.samples:
        validate(sample.transaction)
    return await training_manager.train_bulk(
        (sample.transaction, sample.category_id) for sample in req.samples
    )


@router.get("/train-status")
async def get_training_status(
    training_manager: Annotated[TrainingManager, Depends(get_training_manager)],
) -> dict[str, Any]:
    return training_manager.get_status()
