from __future__ import annotations

import asyncio
import logging
import re
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

import httpx

from staff_auth.core.logging import redact_email
from staff_auth.core.settings import Settings

logger = logging.getLogger(__name__)


class MessageDispatcher(Protocol):
    async def send_email(self, to: str, subject: str, html_body: str, text_body: str) -> bool: ...

    async def send_sms(self, to: str, text: str) -> bool: ...


def normalize_phone(value: str) -> str:
    return re.sub(r"\s+", "", value or "")


def _redact_phone(value: str) -> str:
    return f"***{value[-4:]}" if len(value) > 4 else "redacted"


class SmtpTwilioDispatcher:
    """Delivers email over SMTP and SMS through the Twilio REST API.

    Either channel falls back to a logging mock mode when it is not
    configured. Every send is bounded by ``dispatch_timeout_seconds`` and
    reports failure as ``False`` rather than raising.
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self.timeout = settings.dispatch_timeout_seconds
        self._http = http_client
        self._owns_http = http_client is None

    @property
    def email_configured(self) -> bool:
        return bool(self.settings.smtp_host and (self.settings.email_from or self.settings.smtp_user))

    @property
    def sms_configured(self) -> bool:
        s = self.settings
        return bool(s.twilio_account_sid and s.twilio_auth_token and s.twilio_from_phone)

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    async def send_email(self, to: str, subject: str, html_body: str, text_body: str) -> bool:
        if not self.email_configured:
            logger.info("Email mock delivery to=%s subject=%s", redact_email(to), subject)
            return True
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._send_smtp, to, subject, html_body, text_body), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.error("Email delivery timed out to=%s host=%s", redact_email(to), self.settings.smtp_host)
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as exc:
            logger.error(
                "Email delivery failed to=%s host=%s error=%s",
                redact_email(to),
                self.settings.smtp_host,
                exc.__class__.__name__,
            )
            return False
        logger.info("Email sent to=%s subject=%s", redact_email(to), subject)
        return True

    def _send_smtp(self, to: str, subject: str, html_body: str, text_body: str) -> None:
        s = self.settings
        sender = s.email_from or s.smtp_user
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = sender
        msg["To"] = to
        msg.attach(MIMEText(text_body, "plain"))
        msg.attach(MIMEText(html_body, "html"))

        context = ssl.create_default_context()
        if s.smtp_security == "ssl":
            server = smtplib.SMTP_SSL(s.smtp_host, s.smtp_port, context=context, timeout=self.timeout)
        else:
            server = smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=self.timeout)
        with server:
            if s.smtp_security == "starttls":
                server.starttls(context=context)
            if s.smtp_user and s.smtp_password:
                server.login(s.smtp_user, s.smtp_password)
            server.sendmail(sender, [to], msg.as_string())

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
        return self._http

    async def send_sms(self, to: str, text: str) -> bool:
        phone = normalize_phone(to)
        if not self.sms_configured:
            logger.info("SMS mock delivery to=%s", _redact_phone(phone))
            return True
        s = self.settings
        url = f"{s.twilio_api_base.rstrip('/')}/Accounts/{s.twilio_account_sid}/Messages.json"
        data = {"To": phone, "From": s.twilio_from_phone, "Body": text}
        try:
            response = await asyncio.wait_for(
                self._client().post(url, data=data, auth=(s.twilio_account_sid, s.twilio_auth_token)),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error("SMS delivery timed out to=%s", _redact_phone(phone))
            return False
        except httpx.HTTPError as exc:
            logger.error("SMS delivery failed to=%s error=%s", _redact_phone(phone), exc.__class__.__name__)
            return False
        if response.status_code >= 400:
            try:
                detail = response.json().get("message") or "Unknown Twilio error"
            except ValueError:
                detail = "Unknown Twilio error"
            logger.error("SMS provider rejected message status=%s detail=%s", response.status_code, detail)
            return False
        logger.info("SMS sent to=%s", _redact_phone(phone))
        return True
