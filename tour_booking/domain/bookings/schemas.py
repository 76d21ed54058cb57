"""Booking domain schemas - request bodies for the booking endpoints"""

from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .aggregate import AvailabilityStatus, PriceTier, TourDecision


# ============================================================================
# Submission
# ============================================================================


class CustomerInput(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    notes: Optional[str] = None


class TourRequest(BaseModel):
    """A tour as sent by the booking cart"""

    model_config = ConfigDict(extra="allow")

    id: str
    tourId: Optional[str] = None
    title: str = ""
    date: Optional[str] = None
    guests: int = 1
    groupPrices: list[PriceTier] = Field(default_factory=list)
    calculatedPrice: Optional[float] = None
    price: Optional[float] = None

    @field_validator("guests")
    @classmethod
    def validate_guests(cls, v):
        if v < 1:
            raise ValueError("guests must be at least 1")
        return v


class BookingSubmitData(BaseModel):
    tours: list[TourRequest] = Field(default_factory=list)
    customer: Optional[CustomerInput] = None
    total: Optional[float] = None
    submittedAt: Optional[str] = None


class SubmitBookingRequest(BaseModel):
    bookingData: BookingSubmitData


# ============================================================================
# Availability
# ============================================================================


class AvailabilityResult(BaseModel):
    id: str
    status: AvailabilityStatus
    notes: Optional[str] = None
    limitedPlaces: Optional[int] = None
    alternativeDate: Optional[str] = None

    @field_validator("status")
    @classmethod
    def validate_verdict(cls, v):
        if v == AvailabilityStatus.PENDING:
            raise ValueError("availability verdict must be available, limited, alternative or unavailable")
        return v


class ConfirmAvailabilityRequest(BaseModel):
    bookingId: str
    availabilityResults: list[AvailabilityResult]
    adminNotes: Optional[str] = None


# ============================================================================
# Client feedback
# ============================================================================


class ModificationDetails(BaseModel):
    guests: Optional[int] = None
    date: Optional[str] = None
    notes: Optional[str] = None


class TourFeedback(BaseModel):
    tourId: str
    decision: TourDecision
    modificationDetails: Optional[ModificationDetails] = None
    notes: Optional[str] = None


class ClientFeedbackRequest(BaseModel):
    token: str
    feedback: list[TourFeedback]


class VerifyFeedbackAck(BaseModel):
    token: str
    feedback: Optional[Any] = None


# ============================================================================
# Staff decisions
# ============================================================================


class FeedbackAction(str, Enum):
    CONFIRM = "confirm"
    CANCEL = "cancel"


class ModifiedTour(BaseModel):
    tourId: str
    action: TourDecision
    newDate: Optional[str] = None
    newGuests: Optional[int] = None
    newPrice: Optional[float] = None
    notes: Optional[str] = None


class ConfirmBookingRequest(BaseModel):
    bookingId: str
    action: FeedbackAction
    adminNotes: Optional[str] = None
    cancellationNotes: Optional[str] = None
    totalPrice: Optional[float] = None
    modifiedTours: Optional[list[ModifiedTour]] = None


class CancelBookingRequest(BaseModel):
    bookingId: str
    cancellationNotes: Optional[str] = None


class CompleteBookingRequest(BaseModel):
    bookingId: Optional[str] = None
    booking: Optional[dict[str, Any]] = None

    def resolve_booking_id(self) -> Optional[str]:
        if self.bookingId:
            return self.bookingId
        if self.booking:
            return self.booking.get("id")
        return None


# ============================================================================
# Payments
# ============================================================================


class PaymentDetailsInput(BaseModel):
    receivedAmount: float
    currency: str = "USD"
    paymentMethod: Optional[str] = None
    transactionId: Optional[str] = None
    receiptNumber: Optional[str] = None
    paymentDate: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("receivedAmount")
    @classmethod
    def validate_amount(cls, v):
        if v <= 0:
            raise ValueError("receivedAmount must be greater than 0")
        return round(v, 2)


class ConfirmPaymentRequest(BaseModel):
    bookingId: str
    requestId: Optional[str] = None
    customerEmail: Optional[str] = None
    paymentDetails: PaymentDetailsInput
    sendConfirmationEmail: bool = True
    markAsFullyPaid: bool = False


class CreatePaymentLinkRequest(BaseModel):
    """Only bookingId is used - amounts and tours always come from the stored booking"""

    bookingId: str
    customerName: Optional[str] = None
    customerEmail: Optional[str] = None
    tours: Optional[list[dict[str, Any]]] = None
    amount: Optional[float] = None


# ============================================================================
# Scheduling
# ============================================================================


class StaffAssignmentInput(BaseModel):
    model_config = ConfigDict(extra="allow")

    assigned: bool = False
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    vehicle: Optional[str] = None


class SchedulePoint(BaseModel):
    location: Optional[str] = None
    time: Optional[str] = None
    notes: Optional[str] = None


class ItineraryItem(BaseModel):
    time: Optional[str] = None
    activity: Optional[str] = None
    description: Optional[str] = None


class DayItinerary(BaseModel):
    day: Optional[int] = None
    date: Optional[str] = None
    itinerary: list[ItineraryItem] = Field(default_factory=list)


class EquipmentItem(BaseModel):
    item: str
    quantity: Optional[int] = None
    notes: Optional[str] = None


class TourScheduleInput(BaseModel):
    tourId: str
    title: Optional[str] = None
    date: Optional[str] = None
    tourType: str = "day_tour"
    startTime: Optional[str] = None
    endTime: Optional[str] = None
    durationHours: Optional[Union[float, str]] = None
    durationDays: Optional[Union[int, str]] = None
    guide: Optional[StaffAssignmentInput] = None
    driver: Optional[StaffAssignmentInput] = None
    meetingPoint: Optional[SchedulePoint] = None
    dropoffPoint: Optional[SchedulePoint] = None
    itinerary: list[ItineraryItem] = Field(default_factory=list)
    dayItinerary: list[DayItinerary] = Field(default_factory=list)
    equipment: list[EquipmentItem] = Field(default_factory=list)
    notes: Optional[str] = None


class ScheduleRequest(BaseModel):
    bookingId: str
    tourSchedules: list[TourScheduleInput]
