from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from alphasup.auth.deps import ensure_owner_or_admin, get_current_principal
from alphasup.db.session import get_session
from alphasup.schemas.booking import BookingCreateRequest, BookingResponse
from alphasup.services import bookings as booking_service
from alphasup.services.auth import Principal

router = APIRouter()


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    req: BookingCreateRequest,
    db: AsyncSession = Depends(get_session),
    principal: Principal = Depends(get_current_principal),
):
    """Create a booking awaiting payment for the authenticated customer."""
    booking = await booking_service.create_booking(db, principal.uid, req)
    return BookingResponse.from_booking(booking)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    db: AsyncSession = Depends(get_session),
    principal: Principal = Depends(get_current_principal),
):
    booking = await booking_service.get_booking(db, booking_id)
    ensure_owner_or_admin(principal, booking.customer_id)
    return BookingResponse.from_booking(booking)
