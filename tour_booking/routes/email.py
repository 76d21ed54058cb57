"""
Email Routes - Generic HTML relay for the website contact forms
"""

import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator

from ..email_templates import custom_email_template
from ..rate_limiter import EMAIL_SENDING, create_rate_limiter
from ..security_utils import sanitize_html
from ..shared.validators import is_blank, validate_email

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Email"])


class SendEmailRequest(BaseModel):
    to: str
    cc: Optional[Union[str, list[str]]] = None
    subject: str
    title: str
    htmlBody: str

    @field_validator("to")
    @classmethod
    def validate_to(cls, v):
        return validate_email(v)

    @field_validator("cc")
    @classmethod
    def validate_cc(cls, v):
        if v is None:
            return v
        if isinstance(v, str):
            return validate_email(v)
        return [validate_email(address) for address in v]

    @field_validator("subject", "title", "htmlBody")
    @classmethod
    def validate_required(cls, v):
        if is_blank(v):
            raise ValueError("must not be empty")
        return v


@router.post("/send-email", dependencies=[Depends(create_rate_limiter(EMAIL_SENDING))])
async def send_email(data: SendEmailRequest, request: Request):
    """Relay a sanitized HTML message, using the title as sender display name"""
    mjml_content = custom_email_template(data.title, sanitize_html(data.htmlBody))

    result = await request.app.state.email_service.send(
        to=data.to,
        subject=data.subject,
        mjml_content=mjml_content,
        cc=data.cc,
        sender_name=data.title,
    )
    if not result.sent:
        logger.error(f"❌ Relay email to {data.to} failed: {result.error}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Failed to send email", "details": result.error},
        )

    return {"success": True, "message": "Email sent successfully", "messageId": result.message_id}
