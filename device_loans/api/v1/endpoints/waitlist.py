# device_loans/api/v1/endpoints/waitlist.py
import logging
from typing import List

from fastapi import APIRouter, Body, Depends, Path, Request, status

from device_loans.api.deps import get_waitlist_coordinator
from device_loans.core.rate_limiter import limiter
from device_loans.core.security import ensure_same_user, get_current_subject
from device_loans.models.loan import ApiResponse, DeviceWaitlist, Loan, WaitlistJoinResult, WaitlistPosition
from device_loans.services.waitlist import WaitlistCoordinator

router = APIRouter(tags=["Waitlist"])

logger = logging.getLogger(__name__)


# --- By device ---
@router.post("/device/{device_id}/waitlist", response_model=ApiResponse[Loan])
@limiter.limit("30/minute")
async def join_device_waitlist(
    request: Request,
    device_id: str = Path(...),
    body: Loan.WaitlistMember = Body(...),
    subject: str = Depends(get_current_subject),
    waitlists: WaitlistCoordinator = Depends(get_waitlist_coordinator),
):
    """Join the FIFO waitlist for a device. Joining twice is a no-op."""
    user_id = (body.user_id or "").strip()
    if user_id:
        ensure_same_user(subject, user_id, "Access denied: Cannot join waitlist for other users")
    return ApiResponse[Loan](data=await waitlists.join(device_id, user_id))


@router.get("/device/{device_id}/waitlist", response_model=ApiResponse[DeviceWaitlist])
@limiter.limit("120/minute")
async def get_device_waitlist(
    request: Request,
    device_id: str = Path(...),
    waitlists: WaitlistCoordinator = Depends(get_waitlist_coordinator),
):
    return ApiResponse[DeviceWaitlist](data=await waitlists.list_for(device_id))


@router.get("/waitlist/{user_id}", response_model=ApiResponse[List[WaitlistPosition]])
@limiter.limit("120/minute")
async def get_user_waitlist_positions(
    request: Request,
    user_id: str = Path(...),
    subject: str = Depends(get_current_subject),
    waitlists: WaitlistCoordinator = Depends(get_waitlist_coordinator),
):
    user_id = user_id.strip()
    ensure_same_user(subject, user_id, "Access denied: Cannot access other user data")
    positions = await waitlists.positions_of(user_id)
    logger.info(f"User '{user_id}' is waiting on {len(positions)} device(s).")
    return ApiResponse[List[WaitlistPosition]](data=positions)


# --- By loan ---
@router.post("/{loan_id}/waitlist", response_model=ApiResponse[WaitlistJoinResult], status_code=status.HTTP_200_OK)
@limiter.limit("30/minute")
async def join_loan_waitlist(
    request: Request,
    loan_id: str = Path(...),
    body: Loan.WaitlistMember = Body(...),
    waitlists: WaitlistCoordinator = Depends(get_waitlist_coordinator),
):
    loan, position = await waitlists.join_by_id(loan_id, body.user_id)
    return ApiResponse[WaitlistJoinResult](data=WaitlistJoinResult(loan=loan, position=position))


@router.delete("/{loan_id}/waitlist", response_model=ApiResponse[Loan])
@limiter.limit("30/minute")
async def leave_loan_waitlist(
    request: Request,
    loan_id: str = Path(...),
    body: Loan.WaitlistMember = Body(...),
    subject: str = Depends(get_current_subject),
    waitlists: WaitlistCoordinator = Depends(get_waitlist_coordinator),
):
    return ApiResponse[Loan](data=await waitlists.leave(loan_id, body.user_id, actor=subject))
