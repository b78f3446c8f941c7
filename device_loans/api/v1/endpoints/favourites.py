# device_loans/api/v1/endpoints/favourites.py
from typing import List

from fastapi import APIRouter, Body, Depends, Path, Request, status

from device_loans.api.deps import get_favourite_service
from device_loans.core.rate_limiter import limiter
from device_loans.core.security import ensure_same_user, get_current_subject
from device_loans.models.favourite import Favourite, FavouritesCleared
from device_loans.models.loan import ApiResponse
from device_loans.services.favourites import FavouriteService

router = APIRouter(tags=["Favourites"])

OTHER_USER_DENIED = "Access denied: Cannot access other user data"


@router.post("/favourites", response_model=ApiResponse[List[Favourite]], status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def add_favourite(
    request: Request,
    body: Favourite.Add = Body(...),
    subject: str = Depends(get_current_subject),
    favourites: FavouriteService = Depends(get_favourite_service),
):
    """Star a device. Returns the caller's updated favourites."""
    user_id = (body.user_id or "").strip() or subject
    ensure_same_user(subject, user_id, "Access denied: Cannot add favourites for other users")
    return ApiResponse[List[Favourite]](data=await favourites.add(user_id, body.device_id))


@router.get("/loans/user/{user_id}/favorites", response_model=ApiResponse[List[Favourite]])
@limiter.limit("120/minute")
async def list_favourites(
    request: Request,
    user_id: str = Path(...),
    subject: str = Depends(get_current_subject),
    favourites: FavouriteService = Depends(get_favourite_service),
):
    user_id = user_id.strip()
    ensure_same_user(subject, user_id, OTHER_USER_DENIED)
    return ApiResponse[List[Favourite]](data=await favourites.list_for(user_id))


@router.put("/loans/user/{user_id}/favorites", response_model=ApiResponse[List[Favourite]])
@limiter.limit("30/minute")
async def sync_favourites(
    request: Request,
    user_id: str = Path(...),
    body: Favourite.Sync = Body(...),
    subject: str = Depends(get_current_subject),
    favourites: FavouriteService = Depends(get_favourite_service),
):
    """Replace the user's favourites with the posted device ids."""
    user_id = user_id.strip()
    ensure_same_user(subject, user_id, OTHER_USER_DENIED)
    return ApiResponse[List[Favourite]](data=await favourites.sync(user_id, body.favourites))


@router.delete("/loans/user/{user_id}/favorites", response_model=ApiResponse[FavouritesCleared])
@limiter.limit("30/minute")
async def clear_favourites(
    request: Request,
    user_id: str = Path(...),
    subject: str = Depends(get_current_subject),
    favourites: FavouriteService = Depends(get_favourite_service),
):
    user_id = user_id.strip()
    ensure_same_user(subject, user_id, OTHER_USER_DENIED)
    deleted = await favourites.clear(user_id)
    return ApiResponse[FavouritesCleared](data=FavouritesCleared(deleted_count=deleted))


@router.delete("/loans/user/{user_id}/favorites/{device_id}", response_model=ApiResponse[List[Favourite]])
@limiter.limit("30/minute")
async def remove_favourite(
    request: Request,
    user_id: str = Path(...),
    device_id: str = Path(...),
    subject: str = Depends(get_current_subject),
    favourites: FavouriteService = Depends(get_favourite_service),
):
    """Unstar a device. Returns the remaining favourites."""
    user_id = user_id.strip()
    ensure_same_user(subject, user_id, OTHER_USER_DENIED)
    await favourites.remove(user_id, device_id)
    return ApiResponse[List[Favourite]](data=await favourites.list_for(user_id))
