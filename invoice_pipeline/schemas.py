from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

InvoiceStatus = Literal["pending", "reviewing", "approved", "rejected", "error"]
LineStatus = Literal["pending", "matched", "manual_review", "new_product", "approved"]
UploadSource = Literal["web", "mobile", "api"]
ParsingMethod = Literal["ai", "rules"]

INVOICE_STATUSES = ("pending", "reviewing", "approved", "rejected", "error")
LINE_STATUSES = ("pending", "matched", "manual_review", "new_product", "approved")


class InvoiceHeader(BaseModel):
    model_config = ConfigDict(extra="ignore")
    supplier_name: Optional[str] = None
    supplier_tax_id: Optional[str] = None
    invoice_number: Optional[str] = None
    invoice_date: Optional[date] = None
    total_without_tax: Optional[float] = None
    total_tax: Optional[float] = None
    total_with_tax: Optional[float] = None


class PackageInfo(BaseModel):
    package_type: str
    quantity: float = Field(..., gt=0)
    unit: str


class ComputedPrices(BaseModel):
    per_kg: Optional[float] = None
    per_liter: Optional[float] = None
    per_unit: Optional[float] = None

    def is_empty(self) -> bool:
        return self.per_kg is None and self.per_liter is None and self.per_unit is None


class InvoiceLineItem(BaseModel):
    model_config = ConfigDict(extra="ignore")
    line_number: int = Field(..., ge=1)
    original_description: str
    clean_description: Optional[str] = None
    quantity: Optional[float] = None
    unit: Optional[str] = None
    unit_price: Optional[float] = None
    line_total: Optional[float] = None
    tax_rate: Optional[float] = None
    tax_amount: Optional[float] = None
    package: Optional[PackageInfo] = None
    computed_prices: Optional[ComputedPrices] = None


class ParsedInvoice(BaseModel):
    header: InvoiceHeader = Field(default_factory=InvoiceHeader)
    line_items: List[InvoiceLineItem] = Field(default_factory=list)
    raw_text: str = ""
    method: Optional[ParsingMethod] = None


class ProductMatch(BaseModel):
    product_id: int
    product_name: str
    variation_id: Optional[int] = None
    confidence: float = Field(..., ge=0, le=100)
    match_reason: str = ""


class SuggestedCategory(BaseModel):
    family_id: int
    subfamily_id: Optional[int] = None


class MatchResult(BaseModel):
    product: Optional[ProductMatch] = None
    suggestions: List[ProductMatch] = Field(default_factory=list)
    confidence: float = 0.0
    needs_review: bool = True
    is_new: bool = False
    suggested_category: Optional[SuggestedCategory] = None


class InvoiceProcessingJob(BaseModel):
    """Payload pushed on the ``invoice-processing`` queue."""

    invoice_id: int
    tenant_id: int
    ocr_text: str = ""
    file_path: str
    upload_source: UploadSource = "web"
    user_id: Optional[str] = None
    mime_type: Optional[str] = None


class InvoiceRetryJob(BaseModel):
    """Payload pushed on the ``invoice-retry`` queue."""

    invoice_id: int
    tenant_id: int
    user_id: Optional[str] = None


class InvoiceUploadResponse(BaseModel):
    id: int
    status: InvoiceStatus
    message: str
    file_name: str
    job_id: Optional[str] = None


class InvoiceLineRecord(BaseModel):
    model_config = ConfigDict(extra="allow")
    id: int
    line_number: int
    original_description: str
    clean_description: Optional[str] = None
    quantity: Optional[float] = None
    unit: Optional[str] = None
    unit_price: Optional[float] = None
    line_total: Optional[float] = None
    product_id: Optional[int] = None
    match_confidence: Optional[float] = None
    status: LineStatus = "pending"


class InvoiceRecord(BaseModel):
    model_config = ConfigDict(extra="allow")
    id: int
    tenant_id: int
    status: InvoiceStatus
    file_name: Optional[str] = None
    supplier_name: Optional[str] = None
    invoice_number: Optional[str] = None
    total_with_tax: Optional[float] = None
    error_message: Optional[str] = None
    processed_at: Optional[datetime] = None
    lines: List[InvoiceLineRecord] = Field(default_factory=list)


class LineMatchPayload(BaseModel):
    product_id: int
    variation_id: Optional[int] = None


class RetryResponse(BaseModel):
    invoice_id: int
    job_id: str
    status: str
    delay_ms: int


class JobStatusResponse(BaseModel):
    id: str
    queue: str
    status: str
    attempts_made: int
    data: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Any] = None
    error: Optional[str] = None


class QueueMetricsResponse(BaseModel):
    queue: str
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    total: int
