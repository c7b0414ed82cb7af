from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BatchProductIn(CamelModel):
    product_id: str
    languages: list[str] = Field(min_length=1)
    existing_languages: list[str] = Field(default_factory=list)
    title: str | None = None
    description: str | None = None


class GenerateApplyBatchRequest(CamelModel):
    shop: str
    products: list[BatchProductIn] = Field(min_length=1)
    model: str | None = None


class GenerateApplyBatchResponse(CamelModel):
    queued: bool
    job_id: str | None = None
    total_products: int
    message: str


class JobProgress(CamelModel):
    current: int = 0
    total: int = 0
    remaining_seconds: int | None = None


class JobStatusResponse(CamelModel):
    in_progress: bool
    status: str
    job_id: str | None = None
    progress: JobProgress = Field(default_factory=JobProgress)
    message: str | None = None
    applied_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    tokens_reserved: int = 0
    tokens_used: int = 0
    failure_reason_code: str | None = None
    fail_reasons: list[str] = Field(default_factory=list)
    skip_reasons: list[str] = Field(default_factory=list)


class JobCancelRequest(CamelModel):
    shop: str


class TokenBalanceResponse(CamelModel):
    shop: str
    balance: int
    total_purchased: int
    total_used: int
    pending_reservations: int


class AdminGrantRequest(CamelModel):
    shop: str
    tokens: int = Field(gt=0)
    purchased: bool = True
    note: str = "manual grant"
    external_ref: str | None = None


class AdminShopRequest(CamelModel):
    shop: str
    plan: str | None = None
    access_token: str | None = None
