"""
FastAPI Compliance Validation API Server

Provides REST API endpoints for transaction validation, override decisions
and substance reclassification. Wraps the compliance engine for ERP and
back-office integration.

Usage:
    uvicorn api.server:app --reload --port 8000
"""

import os
import time
import uuid
import logging
from datetime import date, datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends, Security, Query
from fastapi.security import APIKeyHeader

from api.models import (
    TransactionRequest,
    TransactionResponse,
    TransactionLineResponse,
    LicenceUsageResponse,
    ValidationResponse,
    ViolationResponse,
    ResultResponse,
    OverrideApprovalRequest,
    OverrideRejectionRequest,
    ReclassificationRequest,
    ReclassificationCreatedResponse,
    ImpactAnalysisResponse,
    CustomerImpactResponse,
    NotificationResponse,
    CustomerBlockedResponse,
    ClassificationResponse,
    HealthResponse,
    ErrorResponse,
)
from api.middleware import (
    setup_cors,
    setup_exception_handlers,
    create_error_response,
    result_error_response,
    RequestLoggingMiddleware,
)
from compliance.reclassification import impact_to_dict
from compliance.results import ErrorCodes, ValidationResult
from compliance.service import (
    ComplianceService,
    configure_compliance_service,
    get_compliance_service,
)
from config_manager import get_config, ConfigManager, ConfigurationError
from database.connection import init_db, close_db, get_db_provider
from database.models import (
    HolderKey,
    ReclassificationStatus,
    SubstanceReclassification,
    Transaction,
    TransactionLine,
)

# Setup logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
CONFIG_PATH = os.getenv("CONFIG_PATH", "config.yaml")
API_KEY = os.getenv("API_KEY", "")  # Required for authenticated endpoints

# Global state
_config: Optional[ConfigManager] = None
_startup_time: Optional[datetime] = None

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing API key"},
    403: {"model": ErrorResponse, "description": "Invalid API key"},
    404: {"model": ErrorResponse, "description": "Not found"},
    409: {"model": ErrorResponse, "description": "State conflict"},
    422: {"model": ErrorResponse, "description": "Validation error"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}


async def verify_api_key(api_key: Optional[str] = Security(api_key_header)) -> str:
    """Verify API key for protected endpoints.

    If API_KEY environment variable is not set, authentication is disabled.
    """
    if not API_KEY:
        # API key not configured - allow all requests (development mode)
        return "dev-mode"

    if not api_key:
        raise HTTPException(
            status_code=401, detail="Missing API key. Provide X-API-Key header."
        )

    if api_key != API_KEY:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return api_key


# Create FastAPI application
app = FastAPI(
    title="Compliance Validation API",
    description="API for validating controlled-substance transactions against licences, "
                "thresholds and substance reclassifications",
    version=API_VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# Setup middleware
setup_cors(app)
app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)


@app.on_event("startup")
async def startup():
    """Load configuration and connect the compliance service to the database."""
    global _config, _startup_time

    logger.info("Starting Compliance Validation API...")
    start_time = time.time()

    try:
        _config = get_config(CONFIG_PATH)
        logger.info(f"Configuration loaded from {_config.config_path}")

        db_provider = await init_db()
        configure_compliance_service(db_provider, _config)

        _startup_time = datetime.now(timezone.utc)
        logger.info("API ready in %.2f seconds", time.time() - start_time)

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        raise
    except Exception as e:
        logger.error(f"Startup error: {e}")
        raise


@app.on_event("shutdown")
async def shutdown():
    """Cleanup on shutdown."""
    logger.info("Shutting down Compliance Validation API...")
    await close_db()


def _violations(items) -> List[ViolationResponse]:
    return [
        ViolationResponse(
            error_code=v.error_code,
            message=v.message,
            can_override=v.can_override,
            severity=v.severity.value,
            line_number=v.line_number,
            substance_code=v.substance_code,
        )
        for v in items
    ]


def _result_response(result: ValidationResult) -> ResultResponse:
    return ResultResponse(
        is_valid=result.is_valid,
        violations=_violations(result.violations),
        warnings=_violations(result.warnings),
    )


def _transaction_to_response(transaction: Transaction) -> TransactionResponse:
    """Transform a stored transaction to the API response model."""
    return TransactionResponse(
        id=str(transaction.id),
        external_id=transaction.external_id,
        customer_account=transaction.customer_account,
        customer_jurisdiction=transaction.customer_jurisdiction,
        customer_name=transaction.customer_name,
        transaction_type=transaction.transaction_type.value,
        direction=transaction.direction.value,
        transaction_date=transaction.transaction_date,
        validation_status=transaction.validation_status.value,
        validation_date=transaction.validation_date,
        requires_override=transaction.requires_override,
        override_status=transaction.override_status.value,
        override_decided_by=transaction.override_decided_by,
        override_decided_at=transaction.override_decided_at,
        override_justification=transaction.override_justification,
        can_proceed=transaction.can_proceed,
        lines=[
            TransactionLineResponse(
                line_number=line.line_number,
                substance_code=line.substance_code,
                quantity=line.quantity,
                unit=line.unit,
                licence_id=str(line.licence_id) if line.licence_id else None,
                opium_act_list=line.opium_act_list.value if line.opium_act_list else None,
                precursor_category=line.precursor_category.value if line.precursor_category else None,
            )
            for line in transaction.lines
        ],
        violations=_violations(transaction.violations),
        licence_usages=[
            LicenceUsageResponse(
                licence_id=str(usage.licence_id),
                licence_number=usage.licence_number,
                line_numbers=list(usage.line_numbers or []),
                covered_quantity=usage.covered_quantity,
            )
            for usage in transaction.licence_usages
        ],
    )


def _build_transaction(request: TransactionRequest) -> Transaction:
    return Transaction(
        external_id=request.external_id,
        customer_account=request.customer_account,
        customer_jurisdiction=request.customer_jurisdiction,
        transaction_type=request.transaction_type,
        direction=request.direction,
        origin_country=request.origin_country,
        destination_country=request.destination_country,
        transaction_date=request.transaction_date or datetime.now(timezone.utc),
        lines=[
            TransactionLine(
                line_number=line.line_number,
                substance_code=line.substance_code,
                quantity=line.quantity,
                unit=line.unit,
            )
            for line in request.lines
        ],
    )


# ============================================
# TRANSACTIONS
# ============================================

@app.post(
    "/api/v1/transactions/validate",
    response_model=ValidationResponse,
    responses=ERROR_RESPONSES,
    summary="Validate a transaction",
    description="Validate a transaction against customer, licence, threshold and "
                "re-qualification rules, and store the verdict",
)
async def validate_transaction(
    request: TransactionRequest,
    service: ComplianceService = Depends(get_compliance_service),
    api_key: str = Depends(verify_api_key),
):
    """Validate and persist a transaction.

    A failed verdict is a normal outcome and is returned with HTTP 200.
    Requires API key authentication via X-API-Key header.
    """
    start_time = time.time()

    outcome = await service.validate_transaction(_build_transaction(request))
    if outcome.result.has_error(ErrorCodes.VALIDATION_ERROR):
        return result_error_response(outcome.result)

    processing_time_ms = int((time.time() - start_time) * 1000)
    return ValidationResponse(**outcome.to_dict(), processing_time_ms=processing_time_ms)


@app.post(
    "/api/v1/transactions/{transaction_id}/revalidate",
    response_model=ValidationResponse,
    responses=ERROR_RESPONSES,
    summary="Revalidate a stored transaction",
)
async def revalidate_transaction(
    transaction_id: uuid.UUID,
    service: ComplianceService = Depends(get_compliance_service),
    api_key: str = Depends(verify_api_key),
):
    """Validate a stored transaction afresh, replacing its recorded verdict."""
    outcome = await service.revalidate_transaction(transaction_id)
    if outcome.transaction is None:
        return result_error_response(outcome.result)
    return ValidationResponse(**outcome.to_dict())


@app.get(
    "/api/v1/transactions/{transaction_id}",
    response_model=TransactionResponse,
    responses=ERROR_RESPONSES,
    summary="Get a transaction",
)
async def get_transaction(
    transaction_id: uuid.UUID,
    service: ComplianceService = Depends(get_compliance_service),
    api_key: str = Depends(verify_api_key),
):
    transaction = await service.get_transaction_by_id(transaction_id)
    if transaction is None:
        return create_error_response(
            code=ErrorCodes.TRANSACTION_NOT_FOUND,
            message=f"Transaction {transaction_id} not found",
            status_code=404,
        )
    return _transaction_to_response(transaction)


# ============================================
# OVERRIDES
# ============================================

@app.get(
    "/api/v1/overrides/pending",
    response_model=List[TransactionResponse],
    responses=ERROR_RESPONSES,
    summary="List transactions awaiting an override decision",
)
async def get_pending_overrides(
    service: ComplianceService = Depends(get_compliance_service),
    api_key: str = Depends(verify_api_key),
):
    transactions = await service.get_pending_overrides()
    return [_transaction_to_response(t) for t in transactions]


@app.post(
    "/api/v1/transactions/{transaction_id}/override/approve",
    response_model=ResultResponse,
    responses=ERROR_RESPONSES,
    summary="Approve an override",
)
async def approve_override(
    transaction_id: uuid.UUID,
    request: OverrideApprovalRequest,
    service: ComplianceService = Depends(get_compliance_service),
    api_key: str = Depends(verify_api_key),
):
    """Approve the pending override of a failed transaction.

    Requires API key authentication via X-API-Key header.
    """
    result = await service.approve_override(transaction_id, request.approver, request.justification)
    if not result.is_valid:
        return result_error_response(result)
    return _result_response(result)


@app.post(
    "/api/v1/transactions/{transaction_id}/override/reject",
    response_model=ResultResponse,
    responses=ERROR_RESPONSES,
    summary="Reject an override",
)
async def reject_override(
    transaction_id: uuid.UUID,
    request: OverrideRejectionRequest,
    service: ComplianceService = Depends(get_compliance_service),
    api_key: str = Depends(verify_api_key),
):
    result = await service.reject_override(transaction_id, request.rejector, request.reason)
    if not result.is_valid:
        return result_error_response(result)
    return _result_response(result)


# ============================================
# RECLASSIFICATIONS
# ============================================

@app.post(
    "/api/v1/reclassifications",
    response_model=ReclassificationCreatedResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    summary="Record a substance reclassification",
)
async def create_reclassification(
    request: ReclassificationRequest,
    service: ComplianceService = Depends(get_compliance_service),
    api_key: str = Depends(verify_api_key),
):
    """Record a pending reclassification for later processing."""
    reclassification = SubstanceReclassification(**request.model_dump())
    reclassification_id, result = await service.create_reclassification(reclassification)
    if reclassification_id is None:
        return result_error_response(result)
    return ReclassificationCreatedResponse(
        reclassification_id=str(reclassification_id),
        status=ReclassificationStatus.PENDING.value,
    )


@app.get(
    "/api/v1/reclassifications/{reclassification_id}/impact",
    response_model=ImpactAnalysisResponse,
    responses=ERROR_RESPONSES,
    summary="Analyze customer impact of a reclassification",
)
async def analyze_customer_impact(
    reclassification_id: uuid.UUID,
    service: ComplianceService = Depends(get_compliance_service),
    api_key: str = Depends(verify_api_key),
):
    analysis, result = await service.analyze_customer_impact(reclassification_id)
    if analysis is None:
        return result_error_response(result)
    return ImpactAnalysisResponse(**analysis.to_dict())


@app.post(
    "/api/v1/reclassifications/{reclassification_id}/process",
    response_model=ResultResponse,
    responses=ERROR_RESPONSES,
    summary="Process a pending reclassification",
)
async def process_reclassification(
    reclassification_id: uuid.UUID,
    service: ComplianceService = Depends(get_compliance_service),
    api_key: str = Depends(verify_api_key),
):
    """Record customer impacts and apply the new classification to the substance."""
    result = await service.process_reclassification(reclassification_id)
    if not result.is_valid:
        return result_error_response(result)
    return _result_response(result)


@app.post(
    "/api/v1/reclassifications/{reclassification_id}/cancel",
    response_model=ResultResponse,
    responses=ERROR_RESPONSES,
    summary="Cancel a pending reclassification",
)
async def cancel_reclassification(
    reclassification_id: uuid.UUID,
    service: ComplianceService = Depends(get_compliance_service),
    api_key: str = Depends(verify_api_key),
):
    result = await service.cancel_reclassification(reclassification_id)
    if not result.is_valid:
        return result_error_response(result)
    return _result_response(result)


@app.get(
    "/api/v1/reclassifications/{reclassification_id}/notification",
    response_model=NotificationResponse,
    responses=ERROR_RESPONSES,
    summary="Compliance notification for a reclassification",
)
async def get_compliance_notification(
    reclassification_id: uuid.UUID,
    service: ComplianceService = Depends(get_compliance_service),
    api_key: str = Depends(verify_api_key),
):
    notification, result = await service.generate_compliance_notification(reclassification_id)
    if notification is None:
        return result_error_response(result)
    return NotificationResponse(**notification.to_dict())


@app.post(
    "/api/v1/reclassifications/{reclassification_id}/customers/{account}/{jurisdiction}/requalify",
    response_model=ResultResponse,
    responses=ERROR_RESPONSES,
    summary="Mark a customer as re-qualified",
)
async def mark_customer_requalified(
    reclassification_id: uuid.UUID,
    account: str,
    jurisdiction: str,
    service: ComplianceService = Depends(get_compliance_service),
    api_key: str = Depends(verify_api_key),
):
    result = await service.mark_customer_requalified(reclassification_id, HolderKey(account, jurisdiction))
    if not result.is_valid:
        return result_error_response(result)
    return _result_response(result)


# ============================================
# CUSTOMERS AND SUBSTANCES
# ============================================

@app.get(
    "/api/v1/customers/requalification",
    response_model=List[CustomerImpactResponse],
    responses=ERROR_RESPONSES,
    summary="Customers awaiting re-qualification",
)
async def get_customers_requiring_requalification(
    service: ComplianceService = Depends(get_compliance_service),
    api_key: str = Depends(verify_api_key),
):
    impacts = await service.get_customers_requiring_requalification()
    return [CustomerImpactResponse(**impact_to_dict(i)) for i in impacts]


@app.get(
    "/api/v1/customers/{account}/{jurisdiction}/blocked",
    response_model=CustomerBlockedResponse,
    responses=ERROR_RESPONSES,
    summary="Check whether a customer is blocked pending re-qualification",
)
async def check_customer_blocked(
    account: str,
    jurisdiction: str,
    service: ComplianceService = Depends(get_compliance_service),
    api_key: str = Depends(verify_api_key),
):
    is_blocked, impacts = await service.check_customer_blocked(HolderKey(account, jurisdiction))
    return CustomerBlockedResponse(
        customer_account=account,
        customer_jurisdiction=jurisdiction,
        is_blocked=is_blocked,
        impacts=[CustomerImpactResponse(**impact_to_dict(i)) for i in impacts],
    )


@app.get(
    "/api/v1/substances/{substance_code}/classification",
    response_model=ClassificationResponse,
    responses=ERROR_RESPONSES,
    summary="Effective classification of a substance",
)
async def get_effective_classification(
    substance_code: str,
    as_of: Optional[date] = Query(default=None, description="Date (YYYY-MM-DD); defaults to today"),
    service: ComplianceService = Depends(get_compliance_service),
    api_key: str = Depends(verify_api_key),
):
    as_of = as_of or datetime.now(timezone.utc).date()
    classification = await service.get_effective_classification(substance_code, as_of)
    if classification is None:
        return create_error_response(
            code=ErrorCodes.SUBSTANCE_NOT_FOUND,
            message=f"Substance '{substance_code}' not found",
            status_code=404,
        )
    return ClassificationResponse(**classification.to_dict())


@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check service and database health",
)
async def health_check():
    """Return health status including database connectivity. Always returns HTTP 200."""
    uptime_seconds = None
    if _startup_time:
        uptime_seconds = int((datetime.now(timezone.utc) - _startup_time).total_seconds())

    try:
        database_ok = await get_db_provider().health_check()
        return HealthResponse(
            status="healthy" if database_ok else "degraded",
            database="connected" if database_ok else "unavailable",
            version=API_VERSION,
            uptime_seconds=uptime_seconds,
        )
    except Exception as e:
        # Always return HTTP 200, but report error in JSON
        logger.error(f"Health check failed: {e}")
        return HealthResponse(
            status="error",
            database="unknown",
            version=API_VERSION,
            uptime_seconds=uptime_seconds,
            error_message=str(e),
        )


# Root redirect to docs
@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to API documentation."""
    from fastapi.responses import RedirectResponse

    return RedirectResponse(url="/api/docs")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
