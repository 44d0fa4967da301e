from __future__ import annotations

import asyncio
import html
import re
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple
from urllib.parse import urlencode

from projectauth.logging import get_logger
from projectauth.storage.common import ProjectConfig

logger = get_logger(__name__)


class EmailTemplate(str, Enum):
    WELCOME = "welcome"
    VERIFY_EMAIL = "verify_email"
    PASSWORD_RESET = "password_reset"
    PASSWORD_CHANGED = "password_changed"


class Mailer(Protocol):
    async def send(
        self, project_id: str, template: EmailTemplate, data: Mapping[str, Any]
    ) -> bool: ...


# (subject, text body); placeholders use {{name}} and are filled from the send data
DEFAULT_TEMPLATES: Dict[EmailTemplate, Tuple[str, str]] = {
    EmailTemplate.WELCOME: (
        "Welcome to {{projectName}}",
        "Hi {{userName}},\n\nYour {{projectName}} account is ready.\n",
    ),
    EmailTemplate.VERIFY_EMAIL: (
        "Verify your {{projectName}} email",
        "Hi {{userName}},\n\nPlease verify your email address by visiting the link below:\n\n"
        "{{actionUrl}}\n\nThis link will expire in 24 hours.\n",
    ),
    EmailTemplate.PASSWORD_RESET: (
        "Reset your {{projectName}} password",
        "Hi {{userName}},\n\nWe received a request to reset your password. Visit the link "
        "below to choose a new one:\n\n{{actionUrl}}\n\nThis link will expire in 1 hour.\n\n"
        "If you didn't request this, you can safely ignore this email.\n",
    ),
    EmailTemplate.PASSWORD_CHANGED: (
        "Your {{projectName}} password was changed",
        "Hi {{userName}},\n\nThe password for your {{projectName}} account was just changed. "
        "If you didn't make this change, reset your password immediately.\n",
    ),
}

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


def render_template(text: str, values: Mapping[str, Any]) -> str:
    """Fill ``{{name}}`` placeholders; unknown names render empty."""

    def _sub(match: re.Match) -> str:
        value = values.get(match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_sub, text)


class EmailService:
    """Transactional email over SMTP.

    Supports:
    - SMTP with STARTTLS or implicit TLS
    - per-project subject/body overrides and disabled templates
    - fallback to logging when not configured (dev mode)
    """

    def __init__(
        self,
        projects: ProjectConfig,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> None:
        self.projects = projects
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _action_url(self, template: EmailTemplate, project_id: str, token: Optional[str]) -> str:
        if not token:
            return self.base_url
        path = {
            EmailTemplate.VERIFY_EMAIL: "verify-email",
            EmailTemplate.PASSWORD_RESET: "reset-password",
        }.get(template, "")
        query = urlencode({"token": token, "projectId": project_id})
        return f"{self.base_url}/{path}?{query}"

    def compose(
        self, project_id: str, template: EmailTemplate, data: Mapping[str, Any]
    ) -> Optional[Tuple[str, str, str]]:
        """Build (subject, text, html) or None when the project disabled the template."""
        project = self.projects.get(project_id)
        subject, body = DEFAULT_TEMPLATES[template]
        values: Dict[str, Any] = {
            "projectName": project.name if project else "",
            "userName": data.get("userName") or "there",
            "actionUrl": self._action_url(template, project_id, data.get("token")),
        }
        values.update({k: v for k, v in data.items() if k not in {"token", "to"}})
        override = project.email_templates.get(template.value) if project else None
        if override is not None:
            if not override.enabled:
                return None
            subject = override.subject or subject
            body = override.body or body
        text_body = render_template(body, values)
        escaped = {k: html.escape(str(v)) for k, v in values.items() if v is not None}
        html_body = "<html><body><p>{}</p></body></html>".format(
            render_template(html.escape(body), escaped).replace("\n", "<br>")
        )
        return render_template(subject, values), text_body, html_body

    def _send_email(
        self, to_email: str, subject: str, html_body: str, text_body: Optional[str] = None
    ) -> bool:
        """Send an email via SMTP. Returns True if sent successfully."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
                body_preview=(text_body or html_body)[:200],
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.from_email
        msg["To"] = to_email
        if text_body:
            msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error("email_auth_failed", host=self.smtp_host, error=str(e))
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=self._redact_email(to_email), error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    def send_sync(self, project_id: str, template: EmailTemplate, data: Mapping[str, Any]) -> bool:
        to_email = data.get("to")
        if not to_email:
            logger.warning("email_missing_recipient", project_id=project_id, template=template.value)
            return False
        composed = self.compose(project_id, template, data)
        if composed is None:
            logger.info("email_template_disabled", project_id=project_id, template=template.value)
            return False
        subject, text_body, html_body = composed
        return self._send_email(to_email, subject, html_body, text_body)

    async def send(
        self, project_id: str, template: EmailTemplate, data: Mapping[str, Any]
    ) -> bool:
        return await asyncio.to_thread(self.send_sync, project_id, template, data)
