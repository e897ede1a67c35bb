from pydantic import BaseModel, Field

from cascade_categorizer.models import TransactionRecord


class CategorizeRequest(BaseModel):
    transaction: TransactionRecord


class BatchCategorizeRequest(BaseModel):
    transactions: list[TransactionRecord] = Field(max_length=500)


class CorrectionRequest(BaseModel):
    record_id: str
    predicted_category_id: str = ""
    actual_category_id: str


class LabeledSample(BaseModel):
    transaction: TransactionRecord
    category_id: str


class TrainRequest(BaseModel):
    samples: list[LabeledSample]
