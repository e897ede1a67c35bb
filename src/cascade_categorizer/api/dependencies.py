from fastapi import HTTPException, Request

from cascade_categorizer.manager import CategorizerService
from cascade_categorizer.services.training import TrainingManager


def get_service(request: Request) -> CategorizerService:
    service = getattr(request.app.state, "service", None)
    if not service:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return service


def get_training_manager(request: Request) -> TrainingManager:
    manager = getattr(request.app.state, "training_manager", None)
    if not manager:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return manager
