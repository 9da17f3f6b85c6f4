from decimal import Decimal

import pytest

from settlement.config import SettlementConfig
from settlement.models import CreateBookingRequest, OpenAccountRequest, UserRole
from settlement.service import LedgerService


MENTEE_ID = "mentee-1"
MENTOR_ID = "mentor-1"
PROVIDER_ID = "provider-1"
REFERRED_ID = "mentee-ref"


@pytest.fixture
def service() -> LedgerService:
    """A fresh service with a funded mentee, a mentor and a silver provider with one referred mentee."""
    svc = LedgerService(config=SettlementConfig())
    svc.open_account(OpenAccountRequest(user_id=MENTEE_ID, role=UserRole.MENTEE, credits=Decimal("100")))
    svc.open_account(OpenAccountRequest(user_id=MENTOR_ID, role=UserRole.MENTOR))
    svc.open_account(OpenAccountRequest(user_id=PROVIDER_ID, role=UserRole.PROVIDER, level_id="silver"))
    svc.open_account(OpenAccountRequest(user_id=REFERRED_ID, role=UserRole.MENTEE, provider_id=PROVIDER_ID))
    return svc


@pytest.fixture
def completed_booking(service):
    """Books and completes a lesson, returning the booking id."""
    def _complete(cost: str = "30", mentee_id: str = MENTEE_ID) -> str:
        response = service.create_booking(
            CreateBookingRequest(mentee_id=mentee_id, mentor_id=MENTOR_ID, total_cost=Decimal(cost))
        )
        service.complete_booking(response.booking.id)
        return response.booking.id
    return _complete
