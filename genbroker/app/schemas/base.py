from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

UserId = Annotated[str, Field(min_length=1, max_length=64)]


class SubmitJobRequest(BaseModel):
    user_id: UserId
    type: Literal["image", "video"]
    model: Annotated[str, Field(min_length=1, max_length=128)]
    prompt: Annotated[str, Field(max_length=10000)]
    params: Dict[str, Any] = Field(default_factory=dict)


class SubmitJobResponse(BaseModel):
    job_id: str
    reservation_id: str
    credits_reserved: int
    estimated_seconds: int
    warnings: List[str] = []


class CancelJobRequest(BaseModel):
    user_id: UserId


class JobResponse(BaseModel):
    model_config = {'from_attributes': True}

    id: str
    user_id: str
    type: str
    model: str
    prompt: str
    params: Dict[str, Any]
    status: str
    progress: int
    attempts: int
    credits_reserved: int
    credits_used: Optional[int]
    result_url: Optional[str]
    result_meta: Optional[Dict[str, Any]]
    error_message: Optional[str]
    created_at: int
    updated_at: int
    started_at: Optional[int]
    completed_at: Optional[int]


class QueueTaskResponse(BaseModel):
    model_config = {'from_attributes': True}

    status: str
    attempts: int
    last_error: Optional[str]


class JobStatusResponse(BaseModel):
    job: JobResponse
    queue: Optional[QueueTaskResponse] = None


class CancelJobResponse(BaseModel):
    job: JobResponse
    credits_released: int
    removed_from_queue: bool


class ReservationResponse(BaseModel):
    model_config = {'from_attributes': True}

    id: str
    reserved_amount: int
    job_id: Optional[str]
    status: str
    expires_at: int
    created_at: int


class BalanceResponse(BaseModel):
    model_config = {'from_attributes': True}

    user_id: str
    total: int
    available: int
    reserved: int
    consumed: int
    last_refill_period: Optional[str]
    active_reservations: List[ReservationResponse] = []


class TransactionResponse(BaseModel):
    model_config = {'from_attributes': True}

    id: str
    type: str
    amount: int
    model: Optional[str]
    job_id: Optional[str]
    reservation_id: Optional[str]
    description: Optional[str]
    created_at: int


class HistoryResponse(BaseModel):
    items: List[TransactionResponse]
    limit: int
    offset: int


class UsageResponse(BaseModel):
    model_config = {'from_attributes': True}

    user_id: str
    days: int
    total_consumed: int
    total_granted: int
    total_refunded: int
    transaction_count: int
    model_usage: Dict[str, int]
    daily_usage: Dict[str, int]


class AccountRequest(BaseModel):
    user_id: UserId
    initial_grant: Optional[Annotated[int, Field(ge=0)]] = None


class AccountResponse(BaseModel):
    created: bool
    balance: BalanceResponse


class GrantRequest(BaseModel):
    amount: Annotated[int, Field(gt=0, le=1_000_000)]
    description: Annotated[str, Field(max_length=255)] = "Admin grant"


class GrantResponse(BaseModel):
    user_id: str
    granted: int
    available: int


class EstimateRequest(BaseModel):
    type: Literal["image", "video"]
    model: Annotated[str, Field(min_length=1, max_length=128)]
    params: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[UserId] = None


class EstimateResponse(BaseModel):
    type: str
    model: str
    credits: int
    estimated_seconds: int
    breakdown: Dict[str, Any]
    available: Optional[int] = None
    affordable: Optional[bool] = None
    max_affordable_quantity: Optional[int] = None


class QueueStatsResponse(BaseModel):
    model_config = {'from_attributes': True}

    name: str
    concurrency: int
    waiting: int
    delayed: int
    active: int
    completed: int
    failed: int
    retried: int
    removed: int
    running: bool


class SweepResponse(BaseModel):
    released: int
    credits_released: int
    failed_jobs: List[str]


class PurgeResponse(BaseModel):
    deleted: int
    days: int


class JobStatsResponse(BaseModel):
    model_config = {'from_attributes': True}

    days: int
    total: int
    by_status: Dict[str, int]
    by_type: Dict[str, int]
    by_model: Dict[str, int]
    success_rate: float
    average_execution_seconds: Optional[float]
    credits_used: int


class CreditStatsResponse(BaseModel):
    model_config = {'from_attributes': True}

    days: int
    accounts: int
    total_credits: int
    available_credits: int
    reserved_credits: int
    consumed_credits: int
    active_reservations: int
    low_balance_accounts: int
    transaction_count: int
    volume_by_type: Dict[str, int]


class BalanceCheckResponse(BaseModel):
    model_config = {'from_attributes': True}

    user_id: str
    is_valid: bool
    issues: List[str]
    expected_reserved: int
    actual_reserved: int
