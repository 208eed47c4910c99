"""Send an email through SMTP."""

from __future__ import annotations

import asyncio
import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, Optional

from jinja2 import Environment, StrictUndefined, TemplateError
from pydantic import BaseModel, Field, model_validator

from ..contracts import ActivityInput, ActivityResult
from ..errors import ActivityFailed, MissingOrInvalidConfigError, ValidationError
from .base import ConfigurableActivity

logger = logging.getLogger(__name__)

_templates = Environment(autoescape=True, undefined=StrictUndefined)


class EmailPayload(BaseModel):
    recipient: Optional[str] = None
    subject: str
    body: Optional[str] = None
    template: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    html: bool = False

    @model_validator(mode="after")
    def _body_or_template(self) -> "EmailPayload":
        if self.body is not None and self.template is not None:
            raise ValueError("'body' and 'template' cannot both be provided")
        if self.body is None and self.template is None:
            raise ValueError("either 'body' or 'template' must be provided")
        return self


class SendMailActivity(ConfigurableActivity[EmailPayload]):
    """Send an email, optionally rendered from an HTML ``{{ name }}`` template.

    Template values are HTML-escaped.
    """

    name = "email"
    payload_model = EmailPayload

    def configure(self, input: ActivityInput) -> None:
        input.config.setdefault("smtp_host", os.getenv("SMTP_HOST", "localhost"))
        input.config.setdefault("smtp_port", os.getenv("SMTP_PORT", "1025"))
        input.config.setdefault("sender", os.getenv("MAIL_SENDER", "no-reply@stepflow.local"))

        payload = self.decode_payload(input.payload)
        if payload.template is None:
            return
        variables = {
            "recipient": payload.recipient or input.config.get("recipient", ""),
            "subject": payload.subject,
            **payload.data,
        }
        try:
            rendered = _templates.from_string(payload.template).render(variables)
        except TemplateError as exc:
            raise ValidationError(f"cannot render email template: {exc}") from exc
        input.payload = payload.model_copy(update={"body": rendered, "template": None, "html": True})

    async def execute(self, ctx, input: ActivityInput) -> ActivityResult:
        payload = self.decode_payload(input.payload)
        if payload.body is None:
            raise ValidationError("email template was not rendered before sending")

        recipient = payload.recipient or input.config.get("recipient")
        if not recipient:
            raise MissingOrInvalidConfigError("email recipient is required")
        try:
            port = int(input.config.get("smtp_port", 25))
        except (TypeError, ValueError):
            raise MissingOrInvalidConfigError(
                "SMTP_PORT is not an integer", input.config.get("smtp_port")
            ) from None

        message = EmailMessage()
        message["From"] = input.config.get("sender", "")
        message["To"] = recipient
        message["Subject"] = payload.subject
        message.set_content(payload.body, subtype="html" if payload.html else "plain")

        host = input.config.get("smtp_host", "localhost")
        try:
            await asyncio.to_thread(self._send, host, port, message)
        except (OSError, smtplib.SMTPException) as exc:
            raise ActivityFailed(f"sending email failed: {exc}") from exc

        logger.info(f"Email sent to {recipient}")
        return ActivityResult(output="Email sent successfully")

    @staticmethod
    def _send(host: str, port: int, message: EmailMessage) -> None:
        with smtplib.SMTP(host, port, timeout=30) as smtp:
            username = os.getenv("MAIL_USERNAME")
            if username:
                smtp.login(username, os.getenv("MAIL_PASSWORD", ""))
            smtp.send_message(message)
