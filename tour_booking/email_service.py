"""
Email Service using Resend
Provides email functionality using MJML templates for responsive design
"""

import logging
from dataclasses import dataclass
from email.utils import formataddr, parseaddr
from typing import Optional, Union

import resend
from mjml import mjml2html as mjml_to_html

from .config import EMAIL_FROM_ADDRESS, RESEND_API_KEY

logger = logging.getLogger(__name__)

resend.api_key = RESEND_API_KEY


@dataclass
class EmailResult:
    """Outcome of a best-effort send - failures are reported, never raised"""

    sent: bool
    error: Optional[str] = None
    message_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {"sent": self.sent, "error": self.error}


def compile_mjml_to_html(mjml_content: str) -> str:
    """Compile MJML template to production-ready HTML"""
    try:
        result = mjml_to_html(mjml_content)
        # mjml_to_html returns a dict-like result with 'html' and 'errors' keys
        if isinstance(result, dict):
            if result.get("errors"):
                logger.warning(f"MJML compilation warnings: {result['errors']}")
            return result.get("html", "")
        return str(getattr(result, "html", result))
    except Exception as e:
        logger.error(f"MJML compilation error: {e}")
        raise Exception(f"Failed to compile MJML template: {str(e)}") from e


class EmailService:
    """Sends transactional email through Resend"""

    def __init__(self, api_key: Optional[str] = RESEND_API_KEY, from_address: str = EMAIL_FROM_ADDRESS):
        self.api_key = api_key
        self.from_address = from_address

    def _sender(self, sender_name: Optional[str]) -> str:
        if not sender_name:
            return self.from_address
        _, address = parseaddr(self.from_address)
        return formataddr((sender_name, address))

    async def send_html(
        self,
        to: Union[str, list[str]],
        subject: str,
        html_content: str,
        cc: Optional[Union[str, list[str]]] = None,
        sender_name: Optional[str] = None,
    ) -> EmailResult:
        recipients = [to] if isinstance(to, str) else to

        if not self.api_key:
            logger.error("❌ No email service configured - RESEND_API_KEY missing")
            return EmailResult(sent=False, error="Email service not configured")

        try:
            logger.info(f"📧 Sending email via Resend to: {recipients}")
            email_data = {
                "from": self._sender(sender_name),
                "to": recipients,
                "subject": subject,
                "html": html_content,
            }
            if cc:
                email_data["cc"] = [cc] if isinstance(cc, str) else cc

            resend.api_key = self.api_key
            response = resend.Emails.send(email_data)
            message_id = response.get("id") if isinstance(response, dict) else None
            logger.info(f"✅ Email sent successfully via Resend: {message_id}")
            return EmailResult(sent=True, message_id=message_id)
        except Exception as e:
            logger.error(f"❌ Email send error to {recipients}: {e}")
            return EmailResult(sent=False, error=f"Failed to send email: {str(e)}")

    async def send(
        self,
        to: Union[str, list[str]],
        subject: str,
        mjml_content: str,
        cc: Optional[Union[str, list[str]]] = None,
        sender_name: Optional[str] = None,
    ) -> EmailResult:
        """
        Compile an MJML template and send it

        Args:
            to: Recipient email(s)
            subject: Email subject line
            mjml_content: MJML template content (will be compiled to HTML)
            cc: Optional carbon-copy recipient(s)
            sender_name: Optional display name for the from address

        Returns:
            EmailResult with sent flag and error message on failure
        """
        try:
            html_content = compile_mjml_to_html(mjml_content)
        except Exception as e:
            return EmailResult(sent=False, error=str(e))

        return await self.send_html(to, subject, html_content, cc=cc, sender_name=sender_name)
