# device_loans/api/v1/endpoints/loans.py
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Path, Query, Request, status
from loguru import logger

from device_loans.api.deps import get_correlation_id, get_loan_service
from device_loans.core.rate_limiter import limiter
from device_loans.core.security import ensure_same_user, get_current_subject, get_optional_subject
from device_loans.models.loan import ApiResponse, DeviceLoanHistory, Loan
from device_loans.services.loans import LoanService

router = APIRouter(tags=["Loans"])


# --- Create / read ---
@router.post("", response_model=ApiResponse[Loan], status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
async def create_loan(
    request: Request,
    body: Loan.Create = Body(...),
    subject: str = Depends(get_current_subject),
    service: LoanService = Depends(get_loan_service),
):
    """Submit a loan request (status: Requested). The token subject must be the borrower."""
    user_id = (body.user_id or "").strip()
    if user_id:
        ensure_same_user(subject, user_id, "Access denied: Cannot create loan for other users")
    loan = await service.create(body.device_id, body.user_id, loan_id=body.id, start=body.from_, end=body.till)
    return ApiResponse[Loan](data=loan)


@router.get("", response_model=ApiResponse[List[Loan]])
@limiter.limit("120/minute")
async def list_loans(
    request: Request,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    service: LoanService = Depends(get_loan_service),
):
    return ApiResponse[List[Loan]](data=await service.list_loans(skip=skip, limit=limit))


@router.get("/user/{user_id}", response_model=ApiResponse[List[Loan]])
@limiter.limit("120/minute")
async def get_user_loans(
    request: Request,
    user_id: str = Path(...),
    subject: str = Depends(get_current_subject),
    service: LoanService = Depends(get_loan_service),
):
    user_id = user_id.strip()
    ensure_same_user(subject, user_id, "Access denied: Cannot access other user data")
    return ApiResponse[List[Loan]](data=await service.loans_for_user(user_id))


@router.get("/device/{device_id}", response_model=ApiResponse[DeviceLoanHistory])
@limiter.limit("120/minute")
async def get_device_loan_history(
    request: Request,
    device_id: str = Path(...),
    service: LoanService = Depends(get_loan_service),
):
    return ApiResponse[DeviceLoanHistory](data=await service.device_history(device_id.strip()))


@router.get("/{loan_id}", response_model=ApiResponse[Loan])
@limiter.limit("120/minute")
async def get_loan(
    request: Request,
    loan_id: str = Path(...),
    service: LoanService = Depends(get_loan_service),
):
    return ApiResponse[Loan](data=await service.get(loan_id.strip()))


# --- Transitions ---
@router.api_route("/{loan_id}/approve", methods=["PUT", "PATCH"], response_model=ApiResponse[Loan])
@limiter.limit("60/minute")
async def approve_loan(
    request: Request,
    loan_id: str = Path(...),
    actor: Optional[str] = Depends(get_optional_subject),
    correlation_id: str = Depends(get_correlation_id),
    service: LoanService = Depends(get_loan_service),
):
    """Requested -> Approved. Claims the device for this loan."""
    logger.info(f"Approving loan '{loan_id}' (actor: {actor or 'anonymous'}).")
    return ApiResponse[Loan](data=await service.approve(loan_id, actor, correlation_id=correlation_id))


@router.put("/{loan_id}/reject", response_model=ApiResponse[Loan])
@limiter.limit("60/minute")
async def reject_loan(
    request: Request,
    loan_id: str = Path(...),
    body: Optional[Loan.Reject] = Body(None),
    actor: str = Depends(get_current_subject),
    correlation_id: str = Depends(get_correlation_id),
    service: LoanService = Depends(get_loan_service),
):
    reason = body.reason if body else None
    loan = await service.reject(loan_id, actor, reason=reason, correlation_id=correlation_id)
    return ApiResponse[Loan](data=loan)


@router.api_route("/{loan_id}/cancel", methods=["PUT", "DELETE"], response_model=ApiResponse[Loan])
@limiter.limit("60/minute")
async def cancel_loan(
    request: Request,
    loan_id: str = Path(...),
    actor: str = Depends(get_current_subject),
    correlation_id: str = Depends(get_correlation_id),
    service: LoanService = Depends(get_loan_service),
):
    """Requested/Approved -> Cancelled. Borrower only."""
    return ApiResponse[Loan](data=await service.cancel(loan_id, actor, correlation_id=correlation_id))


@router.put("/{loan_id}/collect", response_model=ApiResponse[Loan])
@limiter.limit("60/minute")
async def collect_loan(
    request: Request,
    loan_id: str = Path(...),
    actor: str = Depends(get_current_subject),
    correlation_id: str = Depends(get_correlation_id),
    service: LoanService = Depends(get_loan_service),
):
    """Approved -> Collected. Borrower only."""
    return ApiResponse[Loan](data=await service.collect(loan_id, actor, correlation_id=correlation_id))


@router.api_route("/{loan_id}", methods=["PATCH"], response_model=ApiResponse[Loan])
@router.put("/{loan_id}/return", response_model=ApiResponse[Loan])
@limiter.limit("60/minute")
async def return_loan(
    request: Request,
    loan_id: str = Path(...),
    actor: Optional[str] = Depends(get_optional_subject),
    correlation_id: str = Depends(get_correlation_id),
    service: LoanService = Depends(get_loan_service),
):
    """Collected -> Returned. Releases the device."""
    return ApiResponse[Loan](data=await service.return_loan(loan_id, actor, correlation_id=correlation_id))


@router.put("/{loan_id}/revert-collection", response_model=ApiResponse[Loan])
@limiter.limit("30/minute")
async def revert_collected_loan(
    request: Request,
    loan_id: str = Path(...),
    actor: str = Depends(get_current_subject),
    correlation_id: str = Depends(get_correlation_id),
    service: LoanService = Depends(get_loan_service),
):
    """Administrative correction: Collected -> Approved, clears collectedAt."""
    return ApiResponse[Loan](data=await service.revert_collection(loan_id, actor, correlation_id=correlation_id))
