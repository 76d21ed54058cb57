"""Booking aggregate - the document persisted for every customer booking request"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookingStatus(str, Enum):
    PENDING = "pending"
    PENDING_FEEDBACK = "pending_feedback"
    FEEDBACK_RECEIVED = "feedback_received"
    CONFIRMED = "confirmed"
    PAID = "paid"
    PARTIALLY_SCHEDULED = "partially_scheduled"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {BookingStatus.COMPLETED, BookingStatus.CANCELLED}
PAYMENT_PENDING_STATUSES = {
    BookingStatus.PENDING,
    BookingStatus.PENDING_FEEDBACK,
    BookingStatus.FEEDBACK_RECEIVED,
    BookingStatus.CONFIRMED,
}


class AvailabilityStatus(str, Enum):
    PENDING = "pending"
    AVAILABLE = "available"
    LIMITED = "limited"
    ALTERNATIVE = "alternative"
    UNAVAILABLE = "unavailable"


class LineStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class TourDecision(str, Enum):
    KEEP = "keep"
    MODIFY = "modify"
    REMOVE = "remove"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PARTIALLY_PAID = "partially_paid"
    FULLY_PAID = "fully_paid"


class ScheduleStatus(str, Enum):
    SCHEDULED = "scheduled"
    NOT_SCHEDULED = "not_scheduled"


class PriceTier(BaseModel):
    model_config = ConfigDict(extra="allow")

    groupSize: Union[int, str, None] = None
    price: float = 0
    perPerson: Optional[bool] = None


class Customer(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    email: str
    phone: Optional[str] = None
    notes: Optional[str] = None


class TourModifications(BaseModel):
    dateChanged: bool = False
    guestsChanged: bool = False
    priceChanged: bool = False
    notes: Optional[str] = None


class TourSchedule(BaseModel):
    tourId: str
    title: str = ""
    date: Optional[str] = None
    tourType: str = "day_tour"
    startTime: Optional[str] = None
    endTime: Optional[str] = None
    durationHours: Optional[float] = None
    durationDays: Optional[int] = None
    guests: Optional[int] = None
    originalGuests: Optional[int] = None
    modifications: Optional[TourModifications] = None
    guide: Optional[dict[str, Any]] = None
    driver: Optional[dict[str, Any]] = None
    meetingPoint: Optional[Any] = None
    dropoffPoint: Optional[Any] = None
    itinerary: list[Any] = Field(default_factory=list)
    itineraryType: str = "single_day"
    equipment: list[dict[str, Any]] = Field(default_factory=list)
    scheduleNotes: Optional[str] = None
    scheduledAt: datetime = Field(default_factory=utcnow)
    scheduledBy: Optional[str] = None


class TourLineItem(BaseModel):
    """One tour inside a booking. Catalog extras (slug, image, ...) pass through untouched."""

    model_config = ConfigDict(extra="allow")

    id: str
    tourId: Optional[str] = None
    title: str = ""
    date: Optional[str] = None
    guests: int = 1
    groupPrices: list[PriceTier] = Field(default_factory=list)
    calculatedPrice: float = 0

    availabilityStatus: AvailabilityStatus = AvailabilityStatus.PENDING
    availabilityNotes: Optional[str] = None
    limitedPlaces: Optional[int] = None
    alternativeDate: Optional[str] = None
    confirmedDate: Optional[str] = None

    status: LineStatus = LineStatus.PENDING

    # Snapshot taken before client feedback changes the line
    originalPrice: Optional[float] = None
    originalGuests: Optional[int] = None
    originalDate: Optional[str] = None

    clientDecision: Optional[TourDecision] = None
    clientNotes: Optional[str] = None

    removedFromBooking: bool = False
    cancelledAt: Optional[datetime] = None
    cancelledReason: Optional[str] = None

    modifications: Optional[TourModifications] = None
    schedule: Optional[TourSchedule] = None
    scheduleStatus: Optional[ScheduleStatus] = None

    @property
    def is_locked(self) -> bool:
        """Cancelled or removed lines never change again"""
        return self.status == LineStatus.CANCELLED or self.removedFromBooking

    @property
    def is_billable(self) -> bool:
        if self.is_locked:
            return False
        # Client asked to drop it and staff has not ruled yet
        if self.status == LineStatus.PENDING and self.clientDecision == TourDecision.REMOVE:
            return False
        return True


class LogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    event: str
    changes: dict[str, Any] = Field(default_factory=dict)
    processedBy: Optional[str] = None


class PaymentRecord(BaseModel):
    amount: float
    currency: str = "USD"
    paymentMethod: Optional[str] = None
    transactionId: Optional[str] = None
    sessionId: Optional[str] = None
    receiptNumber: Optional[str] = None
    status: str = "succeeded"
    paymentDate: Optional[datetime] = None
    processedBy: Optional[str] = None
    processedAt: datetime = Field(default_factory=utcnow)
    notes: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)


class NotificationOutcome(BaseModel):
    sent: bool
    error: Optional[str] = None
    at: datetime = Field(default_factory=utcnow)


class PaymentAttempt(BaseModel):
    status: str  # pending, failed, expired
    sessionId: Optional[str] = None
    paymentIntentId: Optional[str] = None
    failureReason: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class SchedulingSummary(BaseModel):
    totalTours: int = 0
    confirmedTours: int = 0
    scheduledTours: int = 0
    cancelledTours: int = 0
    removedTours: int = 0
    allConfirmedScheduled: bool = False


# Fields that live outside the JSON document (own columns/tables, or derived)
DOCUMENT_EXCLUDE = {
    "version",
    "log",
    "payments",
    "pendingClientFeedback",
    "pendingPayment",
    "availabilityConfirmed",
}


class Booking(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    requestId: str
    status: BookingStatus = BookingStatus.PENDING
    currentStep: str = "awaiting_availability_confirmation"

    customer: Customer
    tours: list[TourLineItem] = Field(default_factory=list)

    total: float = 0
    paidAmount: float = 0
    paymentStatus: PaymentStatus = PaymentStatus.UNPAID
    currency: str = "USD"

    paymentLink: Optional[str] = None
    paymentLinkId: Optional[str] = None
    paymentLinkAmount: Optional[float] = None
    paymentLinkExpiresAt: Optional[datetime] = None
    paymentLinkGeneratedAt: Optional[datetime] = None
    paymentLinkActive: bool = False
    paymentLinkDeactivated: bool = False
    lastPaymentAttempt: Optional[PaymentAttempt] = None
    lastPaymentAt: Optional[datetime] = None
    lastRefund: Optional[dict[str, Any]] = None
    lastDispute: Optional[dict[str, Any]] = None

    feedbackLink: Optional[str] = None
    feedbackDecisions: list[dict[str, Any]] = Field(default_factory=list)
    adminNotes: Optional[str] = None
    cancellationNotes: Optional[str] = None

    availabilityConfirmedAt: Optional[datetime] = None
    availabilityConfirmedBy: Optional[str] = None
    feedbackReceivedAt: Optional[datetime] = None
    feedbackProcessedAt: Optional[datetime] = None
    feedbackProcessedBy: Optional[str] = None
    scheduledAt: Optional[datetime] = None
    scheduledBy: Optional[str] = None
    schedulingSummary: Optional[SchedulingSummary] = None
    schedulingWarning: Optional[str] = None
    completedAt: Optional[datetime] = None
    completedBy: Optional[str] = None
    cancelledAt: Optional[datetime] = None
    cancelledBy: Optional[str] = None

    # Email outcomes keyed by purpose (availability, confirmation, ...)
    notifications: dict[str, NotificationOutcome] = Field(default_factory=dict)

    requester: dict[str, Any] = Field(default_factory=dict)
    submittedAt: Optional[str] = None
    createdAt: datetime = Field(default_factory=utcnow)
    updatedAt: datetime = Field(default_factory=utcnow)

    version: int = 0
    log: list[LogEntry] = Field(default_factory=list)
    payments: list[PaymentRecord] = Field(default_factory=list)

    @computed_field
    @property
    def availabilityConfirmed(self) -> bool:
        return self.status != BookingStatus.PENDING

    @computed_field
    @property
    def pendingClientFeedback(self) -> bool:
        return self.status in (BookingStatus.PENDING, BookingStatus.PENDING_FEEDBACK)

    @computed_field
    @property
    def pendingPayment(self) -> bool:
        return self.status in PAYMENT_PENDING_STATUSES

    @property
    def amount_due(self) -> float:
        return round(max(self.total - self.paidAmount, 0), 2)

    @property
    def is_fully_paid(self) -> bool:
        return self.paidAmount >= self.total

    def billable_total(self) -> float:
        return round(sum(t.calculatedPrice for t in self.tours if t.is_billable), 2)

    def confirmed_tours(self) -> list[TourLineItem]:
        return [
            t for t in self.tours if t.status == LineStatus.CONFIRMED and not t.removedFromBooking
        ]

    def find_tour(self, tour_id: str) -> Optional[TourLineItem]:
        for tour in self.tours:
            if tour.id == tour_id:
                return tour
        return None

    def record_notification(self, purpose: str, sent: bool, error: Optional[str] = None) -> None:
        self.notifications[purpose] = NotificationOutcome(sent=sent, error=error)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude=DOCUMENT_EXCLUDE)
