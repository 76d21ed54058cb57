"""
MJML Email Templates
All booking lifecycle emails using MJML for responsive, cross-client compatibility
"""

import html
from typing import Any, Iterable, Optional

from .config import BUSINESS_NAME, SITE_URL

# Brand theme colors - Nile blue / desert gold
THEME = {
    "primary": "#1e3a8a",
    "primary_dark": "#172554",
    "primary_light": "#dbeafe",
    "accent": "#d97706",
    "background": "#f8fafc",
    "card_bg": "#ffffff",
    "text_primary": "#0f172a",
    "text_secondary": "#334155",
    "text_muted": "#64748b",
    "border": "#e2e8f0",
    "success": "#059669",
    "warning": "#f59e0b",
    "danger": "#ef4444",
}

LOGO_URL = f"{SITE_URL}/logo.png"

AVAILABILITY_LABELS = {
    "available": ("Available", THEME["success"]),
    "limited": ("Limited places", THEME["warning"]),
    "alternative": ("Alternative date offered", THEME["warning"]),
    "unavailable": ("Not available", THEME["danger"]),
    "pending": ("Pending", THEME["text_muted"]),
}


def esc(value: Any) -> str:
    """Escape user-supplied values before they go into markup"""
    if value is None:
        return ""
    return html.escape(str(value), quote=True)


def money(amount: Optional[float], currency: str = "USD") -> str:
    symbol = "$" if currency.upper() == "USD" else f"{currency.upper()} "
    return f"{symbol}{(amount or 0):,.2f}"


def _value(item: Any, name: str, default=None):
    if isinstance(item, dict):
        return item.get(name, default)
    value = getattr(item, name, default)
    return getattr(value, "value", value)


def get_base_template(
    title: str,
    preview_text: str,
    content_sections: str,
    cta_url: Optional[str] = None,
    cta_label: Optional[str] = None,
) -> str:
    """Base MJML template wrapper for all emails"""

    cta_section = ""
    if cta_url and cta_label:
        cta_section = f"""
        <mj-section padding="20px 0">
          <mj-column>
            <mj-button
              href="{esc(cta_url)}"
              background-color="{THEME['accent']}"
              color="#ffffff"
              font-weight="600"
              border-radius="8px"
              padding="18px 40px"
              font-size="16px">
              {cta_label}
            </mj-button>
          </mj-column>
        </mj-section>
        """

    return f"""
    <mjml>
      <mj-head>
        <mj-title>{esc(title)}</mj-title>
        <mj-preview>{esc(preview_text)}</mj-preview>
        <mj-attributes>
          <mj-all font-family="-apple-system, BlinkMacSystemFont, 'Segoe UI', 'Helvetica Neue', Arial, sans-serif" />
          <mj-text font-size="16px" line-height="1.6" color="{THEME['text_secondary']}" />
        </mj-attributes>
      </mj-head>
      <mj-body background-color="{THEME['background']}">
        <mj-section background-color="#ffffff" padding="32px 20px">
          <mj-column>
            <mj-image
              src="{LOGO_URL}"
              alt="{esc(BUSINESS_NAME)}"
              width="140px"
              href="{SITE_URL}"
              padding="0" />
          </mj-column>
        </mj-section>

        <mj-section background-color="#ffffff" padding="0 40px 40px 40px">
          <mj-column>
            <mj-divider border-color="{THEME['border']}" border-width="1px" padding="0 0 32px 0" />
          </mj-column>
        </mj-section>

        <mj-section background-color="#ffffff" padding="0 40px 48px 40px">
          <mj-column>
            <mj-text font-size="24px" font-weight="600" color="{THEME['text_primary']}" line-height="1.3" padding="0 0 16px 0">
              {esc(title)}
            </mj-text>

            {content_sections}
          </mj-column>
        </mj-section>

        {cta_section}

        <mj-section padding="32px 20px">
          <mj-column>
            <mj-text align="center" font-size="13px" color="#94a3b8" padding="0">
              {esc(BUSINESS_NAME)} - Luxor &amp; Aswan, Egypt
            </mj-text>
            <mj-text align="center" font-size="12px" color="#94a3b8" padding="12px 0 0 0">
              You're receiving this because you requested a booking with {esc(BUSINESS_NAME)}.
            </mj-text>
          </mj-column>
        </mj-section>
      </mj-body>
    </mjml>
    """


def tour_lines_section(tours: Iterable[Any], show_availability: bool = False) -> str:
    """One mj-text block per tour: title, date, guests, price (and availability verdict)"""
    blocks = []
    for tour in tours:
        details = [
            f"Date: {esc(_value(tour, 'confirmedDate') or _value(tour, 'date'))}",
            f"Guests: {esc(_value(tour, 'guests'))}",
            f"Price: {money(_value(tour, 'calculatedPrice'))}",
        ]
        if show_availability:
            label, color = AVAILABILITY_LABELS.get(
                _value(tour, "availabilityStatus") or "pending", AVAILABILITY_LABELS["pending"]
            )
            details.append(f'<span style="color: {color}; font-weight: 600;">{label}</span>')
            if _value(tour, "limitedPlaces"):
                details.append(f"Places left: {esc(_value(tour, 'limitedPlaces'))}")
            if _value(tour, "alternativeDate"):
                details.append(f"Alternative date: {esc(_value(tour, 'alternativeDate'))}")
            if _value(tour, "availabilityNotes"):
                details.append(f"Notes: {esc(_value(tour, 'availabilityNotes'))}")

        blocks.append(
            f"""
    <mj-text padding="12px 0" border-bottom="1px solid {THEME['border']}">
      <strong>{esc(_value(tour, 'title'))}</strong><br/>
      {'<br/>'.join(details)}
    </mj-text>
    """
        )
    return "".join(blocks)


def total_section(label: str, amount: float) -> str:
    return f"""
    <mj-text align="center" font-size="32px" font-weight="700" color="{THEME['primary']}" padding="20px 0 0 0">
      {money(amount)}
    </mj-text>
    <mj-text align="center" color="{THEME['text_muted']}" font-size="14px" font-weight="600">
      {esc(label)}
    </mj-text>
    """


# ============================================================================
# Submission
# ============================================================================


def check_availability_template(customer_name: str, request_id: str, tours: list, total: float) -> str:
    """Customer acknowledgement - we are checking availability"""
    content = f"""
    <mj-text>
      Hi {esc(customer_name)},
    </mj-text>

    <mj-text>
      Thank you for your booking request <strong>{esc(request_id)}</strong>. Our team is now
      checking availability with our local partners and will get back to you shortly.
    </mj-text>

    {tour_lines_section(tours)}
    {total_section("Estimated total", total)}

    <mj-text font-size="13px" color="{THEME['text_muted']}">
      No payment is taken until availability is confirmed.
    </mj-text>
    """

    return get_base_template(
        title="We're Checking Availability",
        preview_text=f"Booking request {request_id} received",
        content_sections=content,
    )


def new_booking_notification_template(
    customer: Any, request_id: str, tours: list, total: float, requester: dict
) -> str:
    """Staff notification for a new booking request"""
    location = ", ".join(
        str(requester.get(key)) for key in ("city", "region", "country") if requester.get(key)
    )
    content = f"""
    <mj-text>
      A new booking request <strong>{esc(request_id)}</strong> needs an availability check.
    </mj-text>

    <mj-text font-size="14px" color="{THEME['text_muted']}" padding="12px 0">
      Customer: {esc(_value(customer, 'name'))}<br/>
      Email: {esc(_value(customer, 'email'))}<br/>
      Phone: {esc(_value(customer, 'phone') or 'Not provided')}<br/>
      Notes: {esc(_value(customer, 'notes') or 'None')}<br/>
      Location: {esc(location or 'Unknown')}
    </mj-text>

    {tour_lines_section(tours)}
    {total_section("Requested total", total)}
    """

    return get_base_template(
        title="New Booking Request",
        preview_text=f"New booking {request_id}",
        content_sections=content,
    )


# ============================================================================
# Availability outcomes
# ============================================================================


def all_tours_available_template(
    customer_name: str, request_id: str, tours: list, amount_due: float, payment_link: str
) -> str:
    content = f"""
    <mj-text>
      Hi {esc(customer_name)},
    </mj-text>

    <mj-text>
      Great news! Every tour in booking <strong>{esc(request_id)}</strong> is available.
      Complete your payment to secure your places.
    </mj-text>

    {tour_lines_section(tours, show_availability=True)}
    {total_section("Amount due", amount_due)}

    <mj-text font-size="13px" color="{THEME['text_muted']}">
      The payment link expires in 24 hours.
    </mj-text>
    """

    return get_base_template(
        title="Your Tours Are Available",
        preview_text=f"All tours available - {request_id}",
        content_sections=content,
        cta_url=payment_link,
        cta_label="Pay Now",
    )


def partial_availability_template(
    customer_name: str, request_id: str, tours: list, feedback_link: str
) -> str:
    content = f"""
    <mj-text>
      Hi {esc(customer_name)},
    </mj-text>

    <mj-text>
      We've checked availability for booking <strong>{esc(request_id)}</strong>. Some tours
      are not available exactly as requested. Please tell us for each tour whether you'd
      like to keep it, adjust it or remove it.
    </mj-text>

    {tour_lines_section(tours, show_availability=True)}

    <mj-text font-size="13px" color="{THEME['text_muted']}">
      This link is personal and expires in 2 days.
    </mj-text>
    """

    return get_base_template(
        title="Action Needed: Review Availability",
        preview_text=f"Please review your booking {request_id}",
        content_sections=content,
        cta_url=feedback_link,
        cta_label="Review My Booking",
    )


def no_availability_template(customer_name: str, request_id: str, tours: list) -> str:
    content = f"""
    <mj-text>
      Hi {esc(customer_name)},
    </mj-text>

    <mj-text>
      We're sorry - none of the tours in booking <strong>{esc(request_id)}</strong> are
      available on the requested dates. Your request has been closed and nothing has been charged.
    </mj-text>

    {tour_lines_section(tours, show_availability=True)}

    <mj-text>
      We'd love to help you find other dates. Simply reply or submit a new request on our website.
    </mj-text>
    """

    return get_base_template(
        title="Tours Unavailable",
        preview_text=f"Update on booking {request_id}",
        content_sections=content,
        cta_url=f"{SITE_URL}/tours",
        cta_label="Browse Tours",
    )


# ============================================================================
# Feedback
# ============================================================================


def feedback_received_template(
    customer_name: str, request_id: str, decisions: list[dict], summary: dict
) -> str:
    """Staff notification summarising the client's per-tour decisions"""
    rows = "".join(
        f"""
    <mj-text padding="8px 0" border-bottom="1px solid {THEME['border']}">
      <strong>{esc(d.get('title'))}</strong> - {esc(str(d.get('decision', '')).upper())}<br/>
      {esc(d.get('details') or '')}
    </mj-text>
    """
        for d in decisions
    )
    content = f"""
    <mj-text>
      {esc(customer_name)} responded to the availability check for <strong>{esc(request_id)}</strong>.
    </mj-text>

    {rows}

    <mj-text font-size="14px" color="{THEME['text_muted']}" padding="12px 0">
      Kept: {summary.get('toursKept', 0)} &nbsp; Modified: {summary.get('toursModified', 0)}
      &nbsp; Removed: {summary.get('toursRemoved', 0)}
    </mj-text>

    {total_section("New total", summary.get('newTotal', 0))}
    """

    return get_base_template(
        title="Client Feedback Received",
        preview_text=f"Feedback for {request_id}",
        content_sections=content,
    )


def booking_confirmed_modified_template(
    customer_name: str, request_id: str, tours: list, amount_due: float, payment_link: str
) -> str:
    content = f"""
    <mj-text>
      Hi {esc(customer_name)},
    </mj-text>

    <mj-text>
      Thank you for your feedback. We've updated booking <strong>{esc(request_id)}</strong>
      with your choices and confirmed the tours below.
    </mj-text>

    {tour_lines_section(tours)}
    {total_section("Amount due", amount_due)}
    """

    return get_base_template(
        title="Your Booking Is Confirmed",
        preview_text=f"Booking {request_id} confirmed",
        content_sections=content,
        cta_url=payment_link,
        cta_label="Pay Now",
    )


def booking_cancelled_template(customer_name: str, request_id: str, notes: str) -> str:
    content = f"""
    <mj-text>
      Hi {esc(customer_name)},
    </mj-text>

    <mj-text>
      Booking <strong>{esc(request_id)}</strong> has been cancelled.
    </mj-text>

    <mj-text font-size="14px" color="{THEME['text_muted']}" padding="12px 0">
      {esc(notes)}
    </mj-text>

    <mj-text>
      If you have any questions, just reply to this email.
    </mj-text>
    """

    return get_base_template(
        title="Booking Cancelled",
        preview_text=f"Booking {request_id} cancelled",
        content_sections=content,
    )


# ============================================================================
# Payments
# ============================================================================


def payment_confirmation_template(
    customer_name: str,
    request_id: str,
    amount: float,
    total_paid: float,
    remaining: float,
    payment_date: str,
) -> str:
    """Payment confirmation for customer"""
    balance_line = (
        "Your booking is now fully paid. We'll send your tour schedule soon."
        if remaining <= 0
        else f"Remaining balance: {money(remaining)}"
    )
    content = f"""
    <mj-text>
      Hi {esc(customer_name)},
    </mj-text>

    <mj-text>
      Thank you! Your payment for booking <strong>{esc(request_id)}</strong> has been received.
    </mj-text>

    <mj-text align="center" font-size="36px" font-weight="700" color="{THEME['success']}" padding="20px 0">
      {money(amount)}
    </mj-text>

    <mj-text font-size="14px" color="{THEME['text_muted']}" padding="20px 0">
      Payment Date: {esc(payment_date)}<br/>
      Total Paid: {money(total_paid)}<br/>
      {balance_line}
    </mj-text>

    <mj-text font-size="13px" color="{THEME['text_muted']}">
      This is an automated confirmation email. Please do not reply to this message.
    </mj-text>
    """

    return get_base_template(
        title="Payment Received",
        preview_text=f"Payment received - {request_id}",
        content_sections=content,
    )


def payment_failed_template(
    customer_name: str, request_id: str, reason: str, payment_link: Optional[str]
) -> str:
    content = f"""
    <mj-text>
      Hi {esc(customer_name)},
    </mj-text>

    <mj-text>
      We couldn't complete the payment for booking <strong>{esc(request_id)}</strong>.
    </mj-text>

    <mj-text font-size="14px" color="{THEME['danger']}" padding="12px 0">
      {esc(reason)}
    </mj-text>

    <mj-text>
      No money has been taken. You can try again using your payment link.
    </mj-text>
    """

    return get_base_template(
        title="Payment Not Completed",
        preview_text=f"Payment issue - {request_id}",
        content_sections=content,
        cta_url=payment_link,
        cta_label="Try Again" if payment_link else None,
    )


def unapplied_payment_template(
    request_id: str, status: str, amount: float, currency: str, transaction_id: Optional[str], reason: str
) -> str:
    """Staff alert - a Stripe payment arrived for a booking that cannot take it"""
    content = f"""
    <mj-text>
      Stripe collected a payment for <strong>{esc(request_id)}</strong> but the booking is
      <strong>{esc(status)}</strong>, so it was not applied.
    </mj-text>

    {total_section("Amount received", amount)}

    <mj-text font-size="14px" color="{THEME['text_muted']}" padding="12px 0">
      Currency: {esc(currency)}<br/>
      Payment intent: {esc(transaction_id or '-')}<br/>
      Reason: {esc(reason)}
    </mj-text>

    <mj-text>
      Review the booking and refund or reassign the payment from the Stripe dashboard.
    </mj-text>
    """

    return get_base_template(
        title="Payment Needs Review",
        preview_text=f"Unapplied payment - {request_id}",
        content_sections=content,
    )


# ============================================================================
# Scheduling & completion
# ============================================================================


def _schedule_block(tour: Any) -> str:
    schedule = _value(tour, "schedule")
    lines = [
        f"Date: {esc(_value(schedule, 'date'))}",
        f"Time: {esc(_value(schedule, 'startTime') or 'TBA')} - {esc(_value(schedule, 'endTime') or 'TBA')}",
    ]
    meeting = _value(schedule, "meetingPoint") or {}
    if meeting.get("location"):
        lines.append(f"Meeting point: {esc(meeting.get('location'))} {esc(meeting.get('time') or '')}")
    guide = _value(schedule, "guide")
    if guide:
        lines.append(f"Guide: {esc(guide.get('name'))} {esc(guide.get('phone') or '')}")
    driver = _value(schedule, "driver")
    if driver:
        lines.append(f"Driver: {esc(driver.get('name'))} {esc(driver.get('vehicle') or '')}")

    for entry in _value(schedule, "itinerary") or []:
        if "day" in entry:
            activities = "; ".join(
                f"{esc(a.get('time') or '')} {esc(a.get('activity') or '')}"
                for a in entry.get("activities") or []
            )
            lines.append(f"Day {esc(entry.get('day'))}: {activities}")
        else:
            lines.append(f"{esc(entry.get('time') or '')} {esc(entry.get('activity') or '')}")

    return f"""
    <mj-text padding="12px 0" border-bottom="1px solid {THEME['border']}">
      <strong>{esc(_value(tour, 'title'))}</strong><br/>
      {'<br/>'.join(lines)}
    </mj-text>
    """


def tour_scheduled_template(customer_name: str, request_id: str, scheduled_tours: list) -> str:
    content = f"""
    <mj-text>
      Hi {esc(customer_name)},
    </mj-text>

    <mj-text>
      Your tour schedule for booking <strong>{esc(request_id)}</strong> is ready.
    </mj-text>

    {''.join(_schedule_block(tour) for tour in scheduled_tours)}
    """

    return get_base_template(
        title="Your Tour Schedule",
        preview_text=f"Schedule for {request_id}",
        content_sections=content,
    )


def booking_completed_template(customer_name: str, request_id: str) -> str:
    content = f"""
    <mj-text>
      Hi {esc(customer_name)},
    </mj-text>

    <mj-text>
      Thank you for travelling with {esc(BUSINESS_NAME)}! Booking
      <strong>{esc(request_id)}</strong> is now complete. We hope you enjoyed every moment.
    </mj-text>

    <mj-text>
      We'd love to hear about your experience.
    </mj-text>
    """

    return get_base_template(
        title="Thank You for Travelling With Us",
        preview_text=f"Booking {request_id} completed",
        content_sections=content,
        cta_url=f"{SITE_URL}/contact",
        cta_label="Share Your Feedback",
    )


def custom_email_template(title: str, html_body: str) -> str:
    """Free-form email - html_body must already be sanitized"""
    content = f"""
    <mj-text>
      {html_body}
    </mj-text>
    """

    return get_base_template(title=title, preview_text=title, content_sections=content)
