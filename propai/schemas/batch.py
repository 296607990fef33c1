from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class BatchSubmitIn(BaseModel):
    # omitted -> every property still lacking an AI description
    property_ids: list[str] | None = Field(default=None, max_length=1000)


class BatchSubmitOut(BaseModel):
    batch_id: str
    property_count: int
    estimated_cost: float
    estimated_tokens: int


class BatchGenerationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    batch_id: str
    status: str
    input_file_id: str
    output_file_id: str | None
    error_file_id: str | None
    total_requests: int
    completed_requests: int
    failed_requests: int
    estimated_cost: float
    estimated_tokens: int
    actual_cost: float | None
    results_applied_at: datetime | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


class BatchApplyOut(BaseModel):
    success_count: int
    error_count: int
    total_results: int
    already_applied: bool = False


class BatchCancelOut(BaseModel):
    batch_id: str
    status: str
    already_finished: bool


class BatchOverviewOut(BaseModel):
    active_batches: int
    pending_properties: int
    active: list[BatchGenerationOut]


class BatchPage(BaseModel):
    items: list[BatchGenerationOut]
    total: int
    limit: int
    offset: int
