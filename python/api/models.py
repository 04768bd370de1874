"""
Pydantic request/response schemas for the Compliance Validation API

Transforms engine types from the compliance package to Pydantic models for
API validation.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from database.models import (
    OpiumActList,
    PrecursorCategory,
    TransactionDirection,
    TransactionType,
)


class TransactionLineRequest(BaseModel):
    """A substance line of a transaction."""
    line_number: int = Field(..., ge=1, description="Line number, unique within the transaction")
    substance_code: str = Field(..., min_length=1, max_length=50, description="Controlled substance code")
    quantity: Decimal = Field(..., gt=0, description="Quantity (must be positive)")
    unit: str = Field(default="g", max_length=20, description="Quantity unit")


class TransactionRequest(BaseModel):
    """Request schema for transaction validation."""
    external_id: str = Field(..., min_length=1, max_length=100, description="Caller's transaction reference")
    customer_account: str = Field(..., min_length=1, max_length=50)
    customer_jurisdiction: str = Field(..., min_length=1, max_length=20)
    transaction_type: TransactionType = Field(..., description="Order, Shipment, Return or Transfer")
    direction: TransactionDirection = Field(default=TransactionDirection.INTERNAL)
    origin_country: Optional[str] = Field(default=None, min_length=2, max_length=2)
    destination_country: Optional[str] = Field(default=None, min_length=2, max_length=2)
    transaction_date: Optional[datetime] = Field(
        default=None,
        description="Transaction timestamp (ISO 8601); defaults to now"
    )
    lines: List[TransactionLineRequest] = Field(..., min_length=1)

    @field_validator('origin_country', 'destination_country')
    @classmethod
    def upper_country(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v


class ViolationResponse(BaseModel):
    """A violation or warning."""
    error_code: str
    message: str
    can_override: bool = False
    severity: str = "Error"
    line_number: Optional[int] = None
    substance_code: Optional[str] = None


class ResultResponse(BaseModel):
    """Outcome of an engine operation."""
    is_valid: bool
    violations: List[ViolationResponse] = Field(default_factory=list)
    warnings: List[ViolationResponse] = Field(default_factory=list)


class ValidationResponse(ResultResponse):
    """Response schema for transaction validation."""
    can_proceed: bool = Field(..., description="Passed, or failed with an approved override")
    transaction_id: Optional[str] = None
    validation_status: Optional[str] = None
    requires_override: Optional[bool] = None
    override_status: Optional[str] = None
    processing_time_ms: Optional[int] = Field(default=None, ge=0)


class TransactionLineResponse(BaseModel):
    line_number: int
    substance_code: str
    quantity: Decimal
    unit: str
    licence_id: Optional[str] = None
    opium_act_list: Optional[str] = None
    precursor_category: Optional[str] = None


class LicenceUsageResponse(BaseModel):
    licence_id: str
    licence_number: str
    line_numbers: List[int] = Field(default_factory=list)
    covered_quantity: Decimal


class TransactionResponse(BaseModel):
    """A stored transaction with its verdict."""
    id: str
    external_id: str
    customer_account: str
    customer_jurisdiction: str
    customer_name: Optional[str] = None
    transaction_type: str
    direction: str
    transaction_date: datetime
    validation_status: str
    validation_date: Optional[datetime] = None
    requires_override: bool
    override_status: str
    override_decided_by: Optional[str] = None
    override_decided_at: Optional[datetime] = None
    override_justification: Optional[str] = None
    can_proceed: bool
    lines: List[TransactionLineResponse] = Field(default_factory=list)
    violations: List[ViolationResponse] = Field(default_factory=list)
    licence_usages: List[LicenceUsageResponse] = Field(default_factory=list)


class OverrideApprovalRequest(BaseModel):
    """Request schema for approving an override."""
    approver: str = Field(..., min_length=1, max_length=200)
    justification: str = Field(..., description="Reason the failed transaction may proceed")


class OverrideRejectionRequest(BaseModel):
    """Request schema for rejecting an override."""
    rejector: str = Field(..., min_length=1, max_length=200)
    reason: str = Field(..., description="Reason for the rejection")


class ReclassificationRequest(BaseModel):
    """Request schema for recording a substance reclassification."""
    substance_code: str = Field(..., min_length=1, max_length=50)
    previous_opium_act_list: OpiumActList
    new_opium_act_list: OpiumActList
    previous_precursor_category: PrecursorCategory
    new_precursor_category: PrecursorCategory
    effective_date: date
    regulatory_reference: str = Field(..., max_length=300)
    regulatory_authority: str = Field(..., max_length=200)
    reason: Optional[str] = None
    initiated_by: Optional[str] = Field(default=None, max_length=200)


class ReclassificationCreatedResponse(BaseModel):
    reclassification_id: str
    status: str


class CustomerImpactResponse(BaseModel):
    customer_account: str
    customer_jurisdiction: str
    customer_name: Optional[str] = None
    substance_code: str
    has_sufficient_licence: bool
    requires_requalification: bool
    licence_gap_summary: Optional[str] = None
    relevant_licence_ids: List[str] = Field(default_factory=list)
    requalification_date: Optional[str] = None


class ImpactAnalysisResponse(BaseModel):
    """Per-customer impact of a reclassification."""
    reclassification_id: str
    substance_code: str
    total_affected_customers: int = Field(..., ge=0)
    customers_flagged_for_requalification: int = Field(..., ge=0)
    customers_with_sufficient_licences: int = Field(..., ge=0)
    impacts: List[CustomerImpactResponse] = Field(default_factory=list)


class CustomerActionResponse(BaseModel):
    customer_account: str
    customer_jurisdiction: str
    customer_name: Optional[str] = None
    action_required: str
    licence_gap_summary: Optional[str] = None
    relevant_licence_ids: List[str] = Field(default_factory=list)


class NotificationResponse(BaseModel):
    """Compliance team notification for a reclassification."""
    reclassification_id: str
    substance_code: str
    substance_name: str
    regulatory_reference: str
    effective_date: date
    total_affected_customers: int = Field(..., ge=0)
    customers_requiring_action: int = Field(..., ge=0)
    required_actions: List[CustomerActionResponse] = Field(default_factory=list)


class CustomerBlockedResponse(BaseModel):
    customer_account: str
    customer_jurisdiction: str
    is_blocked: bool
    impacts: List[CustomerImpactResponse] = Field(default_factory=list)


class ClassificationResponse(BaseModel):
    """Classification of a substance on a date."""
    substance_code: str
    as_of: date
    opium_act_list: str
    precursor_category: str
    source_reclassification_id: Optional[str] = None


class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="Service status")
    database: str = Field(default="unknown", description="Database connectivity")
    version: str = Field(..., description="API version")
    uptime_seconds: Optional[int] = Field(
        default=None,
        description="Server uptime in seconds"
    )
    error_message: Optional[str] = None


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    suggestion: Optional[str] = Field(default=None, description="How to fix the error")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: ErrorDetail
