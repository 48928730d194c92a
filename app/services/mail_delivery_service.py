"""
Mail delivery service used by the mail scheduler worker.

Renders a named Jinja2 template and hands the message to the SMTP server.
Transport failures are reported as False; template problems raise so the
worker can record them as the job's failure reason.
"""

import re
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from pathlib import Path
from typing import Any

import aiosmtplib
from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

_TAG_RE = re.compile(r"<[^>]+>")
_BLANK_LINES_RE = re.compile(r"\n\s*\n+")


class MailDeliveryError(Exception):
    """Raised for unusable delivery configuration or templates."""

    def __init__(self, message: str, template: str | None = None):
        super().__init__(message)
        self.template = template


class MailDeliveryService:
    """Template rendering + SMTP transport."""

    def __init__(
        self,
        template_dir: str | Path,
        smtp_config: dict[str, Any],
        from_address: str,
        from_name: str | None = None,
    ):
        self.template_dir = Path(template_dir)
        self.smtp_config = smtp_config
        self.from_address = from_address
        self.from_name = from_name

        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape(["html", "xml"]),
            undefined=StrictUndefined,  # Fail on missing template variables
            trim_blocks=True,
            lstrip_blocks=True,
        )

    @classmethod
    def from_settings(cls) -> "MailDeliveryService":
        return cls(
            template_dir=settings.MAIL_TEMPLATE_DIR,
            smtp_config=settings.get_smtp_config(),
            from_address=settings.MAIL_FROM_ADDRESS,
            from_name=settings.MAIL_FROM_NAME,
        )

    def render(self, template_name: str, template_data: dict[str, Any]) -> tuple[str, str]:
        """
        Render `<template_name>.html` and derive a plain-text alternative.

        Returns:
            (html_body, text_body)

        Raises:
            MailDeliveryError: If the template name is empty
            jinja2.TemplateError: If the template is missing or fails to render
        """
        if not template_name or not template_name.strip():
            raise MailDeliveryError("Template name cannot be empty")

        filename = template_name if template_name.endswith(".html") else f"{template_name}.html"
        html_body = self.env.get_template(filename).render(**template_data)
        return html_body, self._html_to_text(html_body)

    @staticmethod
    def _html_to_text(html_body: str) -> str:
        text = _TAG_RE.sub("", html_body)
        return _BLANK_LINES_RE.sub("\n\n", text).strip()

    def build_message(self, recipient: str, subject: str, html_body: str, text_body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = (
            formataddr((self.from_name, self.from_address)) if self.from_name else self.from_address
        )
        message["To"] = recipient
        message["Subject"] = subject
        message["Message-ID"] = make_msgid()
        message.set_content(text_body)
        message.add_alternative(html_body, subtype="html")
        return message

    async def deliver(
        self,
        recipient: str,
        subject: str,
        template_name: str,
        template_data: dict[str, Any],
    ) -> bool:
        """
        Render and send one message.

        Returns:
            True if the SMTP server accepted the message, False on transport failure
        """
        html_body, text_body = self.render(template_name, template_data)
        message = self.build_message(recipient, subject, html_body, text_body)

        port = self.smtp_config.get("port", 587)
        try:
            await aiosmtplib.send(
                message,
                hostname=self.smtp_config["host"],
                port=port,
                username=self.smtp_config.get("username") or None,
                password=self.smtp_config.get("password") or None,
                use_tls=port == 465,  # Implicit TLS for port 465
                start_tls=True if port == 587 else None,
                validate_certs=self.smtp_config.get("validate_certs", True),
                timeout=self.smtp_config.get("timeout", 60),
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.warning(
                "Mail delivery failed",
                recipient=recipient,
                template=template_name,
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

        logger.debug("Mail delivered", recipient=recipient, template=template_name)
        return True
