# device_loans/api/v1/api.py
from fastapi import APIRouter

from device_loans.api.v1.endpoints import favourites, loans, waitlist

api_router_v1 = APIRouter(prefix="/api/v1")

# Waitlist and favourite routes first so the static segments win over /loans/{loan_id}
api_router_v1.include_router(waitlist.router, prefix="/loans")
api_router_v1.include_router(favourites.router)
api_router_v1.include_router(loans.router, prefix="/loans")
