from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx
from python_http_client.exceptions import HTTPError as SendGridHTTPError
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Email, Mail

from .config import Settings
from .models import RunSummary
from .utils import format_datetime_utc

logger = logging.getLogger(__name__)

BREVO_SEND_URL = "https://api.brevo.com/v3/smtp/email"

# 送信リトライ: 502/503/504 と接続エラーは1回だけ再送する
TRANSIENT_MAIL_STATUSES = frozenset({502, 503, 504})
MAIL_ATTEMPTS = 2

# Failures listed in the report e-mail before it is cut short.
MAX_REPORTED_FAILURES = 50


class MailError(Exception):
    """Raised when the run report cannot be delivered."""


@dataclass(frozen=True)
class Recipients:
    from_email: str
    from_name: str
    to_email: str


@dataclass(frozen=True)
class RunReport:
    subject: str
    text_body: str
    failed: bool

    @classmethod
    def from_summary(cls, summary: RunSummary) -> "RunReport":
        return cls(
            subject=report_subject(summary),
            text_body=report_body(summary),
            failed=bool(summary.error) or (summary.total > 0 and summary.succeeded == 0),
        )


class ReportSender(Protocol):
    provider: str

    def send_report(self, summary: RunSummary) -> RunReport: ...


def report_subject(summary: RunSummary) -> str:
    counts = f"{summary.succeeded}/{summary.total} fetched"
    if summary.error:
        return f"[raindrop-notebook] FAILED #{summary.tag}: {counts}, no note created"
    if summary.total and summary.succeeded == 0:
        return f"[raindrop-notebook] FAILED #{summary.tag}: every bookmark failed"
    if summary.dry_run:
        return f"[raindrop-notebook] #{summary.tag}: {counts} (dry run)"
    if summary.failed:
        return f"[raindrop-notebook] #{summary.tag}: {counts}, {summary.failed} failed"
    return f"[raindrop-notebook] #{summary.tag}: {counts}"


def report_body(summary: RunSummary) -> str:
    lines = [
        f"Tag: #{summary.tag}",
        f"Started: {format_datetime_utc(summary.started_at)}",
        f"Finished: {format_datetime_utc(summary.ended_at)}",
        f"Total: {summary.total} / Succeeded: {summary.succeeded} / Failed: {summary.failed}",
    ]
    if summary.note_id:
        lines.append(f"Note: {summary.note_id}" + (f" ({summary.note_url})" if summary.note_url else ""))
    elif summary.dry_run:
        lines.append("Note: not submitted (dry run)")
    else:
        lines.append("Note: not created")
    if summary.error:
        lines.append(f"Error: {summary.error}")
    if summary.failures:
        lines.append("")
        lines.append("Failed URLs:")
        for url, reason in summary.failures[:MAX_REPORTED_FAILURES]:
            lines.append(f"- {url} ({reason})")
        hidden = len(summary.failures) - MAX_REPORTED_FAILURES
        if hidden > 0:
            lines.append(f"... and {hidden} more")
    return "\n".join(lines) + "\n"


class ReportMailer:
    """
    Sends the report of one run through a mail provider.

    Subclasses implement ``_deliver`` returning the provider's HTTP status, or
    raising MailError when the request never got an answer. Transient statuses
    and connection failures are retried once; anything else >= 400 is final.
    """

    provider = "unknown"

    def __init__(self, recipients: Recipients):
        self._recipients = recipients

    def send_report(self, summary: RunSummary) -> RunReport:
        report = RunReport.from_summary(summary)
        last_error: Optional[MailError] = None
        for attempt in range(1, MAIL_ATTEMPTS + 1):
            try:
                status = self._deliver(report)
            except MailError as exc:
                logger.warning("%s request error (attempt %s/%s): %s", self.provider, attempt, MAIL_ATTEMPTS, exc)
                last_error = exc
                continue
            if status in TRANSIENT_MAIL_STATUSES and attempt < MAIL_ATTEMPTS:
                logger.warning("%s transient error (status=%s); retrying once", self.provider, status)
                continue
            if status >= 400:
                raise MailError(f"{self.provider} returned error status {status} for run report of #{summary.tag}")
            logger.info("Run report for #%s sent via %s (status %s)", summary.tag, self.provider, status)
            return report
        raise MailError(f"Failed to send run report via {self.provider}: {last_error}") from last_error

    def _deliver(self, report: RunReport) -> int:
        raise NotImplementedError


class BrevoReportMailer(ReportMailer):
    provider = "brevo"

    def __init__(self, api_key: str, recipients: Recipients, *, transport: httpx.BaseTransport | None = None):
        super().__init__(recipients)
        self._api_key = api_key
        self._transport = transport

    def _deliver(self, report: RunReport) -> int:
        payload = {
            "sender": {"name": self._recipients.from_name, "email": self._recipients.from_email},
            "to": [{"email": self._recipients.to_email}],
            "subject": report.subject,
            "textContent": report.text_body,
            "tags": ["raindrop-notebook", "failed" if report.failed else "ok"],
        }
        headers = {"api-key": self._api_key, "accept": "application/json"}
        try:
            with httpx.Client(timeout=20.0, transport=self._transport) as client:
                response = client.post(BREVO_SEND_URL, json=payload, headers=headers)
        except httpx.RequestError as exc:
            raise MailError(f"Brevo request failed: {exc}") from exc
        return response.status_code


class SendGridReportMailer(ReportMailer):
    provider = "sendgrid"

    def __init__(self, api_key: str, recipients: Recipients, *, client: Any = None):
        super().__init__(recipients)
        self._client = client or SendGridAPIClient(api_key)

    def _deliver(self, report: RunReport) -> int:
        mail = Mail(
            from_email=Email(email=self._recipients.from_email, name=self._recipients.from_name),
            to_emails=self._recipients.to_email,
            subject=report.subject,
            plain_text_content=report.text_body,
        )
        try:
            response = self._client.send(mail)
        except SendGridHTTPError as exc:
            return int(exc.status_code)
        except OSError as exc:
            raise MailError(f"SendGrid request failed: {exc}") from exc
        return response.status_code


def build_report_mailer(
    settings: Settings,
    *,
    transport: httpx.BaseTransport | None = None,
) -> Optional[ReportMailer]:
    """
    Provider selection:
    - None when no provider key or no sender/recipient address is set.
    - Brevo when its key is set (also when both are set).
    - SendGrid otherwise.
    """
    if not settings.mail_enabled:
        return None
    recipients = Recipients(
        from_email=settings.from_email or "",
        from_name=settings.from_name,
        to_email=settings.to_email or "",
    )
    brevo_key = (settings.brevo_api_key or "").strip()
    if brevo_key:
        return BrevoReportMailer(brevo_key, recipients, transport=transport)
    return SendGridReportMailer((settings.sendgrid_api_key or "").strip(), recipients)
