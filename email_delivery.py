"""
Notification delivery for accepted contact submissions.

Two messages are sent per submission: a notification to the administrator
(with the uploaded documents attached) and a confirmation to the sender. Each
message walks an ordered list of transports, Resend first and SMTP second,
until one accepts it. Delivery runs on a bounded worker pool after the HTTP
response has been sent, and always ends by deleting the submission's files.
"""
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from email.message import EmailMessage
from email.utils import formataddr
from typing import Callable, Dict, List, Optional
import base64
import html
import mimetypes
import smtplib
import ssl
import threading

import requests

from config import (
    DELIVERY_WORKERS,
    RESEND_API_KEY,
    RESEND_FROM_EMAIL,
    RESEND_FROM_NAME,
    SMTP_HOST,
    SMTP_PASSWORD,
    SMTP_PORT,
    SMTP_USE_SSL,
    SMTP_USER,
    get_notification_email,
    is_debug_mode,
)
from errors import TransientDeliveryFailure
from submission import ALLOWED_TRANSITIONS, SubmissionAttempt, SubmissionState, cleanup_files

RESEND_API_URL = "https://api.resend.com/emails"


@dataclass
class Attachment:
    filename: str
    path: str
    content_type: str = "application/octet-stream"


@dataclass
class OutgoingEmail:
    template: str
    to: str
    subject: str
    html: str
    text: str
    reply_to: Optional[str] = None
    attachments: List[Attachment] = field(default_factory=list)


@dataclass
class DeliveryOutcome:
    template: str
    to: str
    success: bool
    transport: Optional[str] = None
    message_id: Optional[str] = None
    errors: List[str] = field(default_factory=list)


@dataclass
class DeliveryReport:
    submission_id: str
    outcomes: List[DeliveryOutcome] = field(default_factory=list)
    state: SubmissionState = SubmissionState.DELIVERING
    files_removed: int = 0
    finished_at: Optional[datetime] = None

    @property
    def delivered(self) -> bool:
        return bool(self.outcomes) and all(outcome.success for outcome in self.outcomes)


# ----- TEMPLATES -----

def _html_paragraphs(text: str) -> str:
    return html.escape(text).replace("\n", "<br>")


def _documents_listing(attempt: SubmissionAttempt) -> List[str]:
    return [
        f"{uploaded.sanitized_name} ({uploaded.size_bytes / 1024:.2f} KB)"
        for uploaded in attempt.files
    ]


def get_admin_email_template(attempt: SubmissionAttempt) -> str:
    """Generate HTML for the administrator notification"""
    documents = _documents_listing(attempt)
    documents_html = ""
    if documents:
        items = "".join(f"<li>{html.escape(doc)}</li>" for doc in documents)
        documents_html = f"""
            <div style="margin: 20px 0;">
                <h3>Attached Documents:</h3>
                <ul>{items}</ul>
            </div>
        """

    debug_banner = ""
    if is_debug_mode():
        debug_banner = """
        <div style="background-color: #ff6b6b; color: white; padding: 15px; text-align: center; margin-bottom: 20px; border-radius: 4px;">
            <strong>DEBUG MODE</strong> - This is a test notification
        </div>
        """

    return f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
        {debug_banner}
        <h2 style="color: #333; border-bottom: 2px solid #007bff; padding-bottom: 10px;">
            New Contact Form Submission
        </h2>
        <div style="background: #f8f9fa; padding: 20px; border-radius: 5px; margin: 20px 0;">
            <p><strong>Name:</strong> {html.escape(attempt.name)}</p>
            <p><strong>Email:</strong> {html.escape(attempt.email)}</p>
            <p><strong>Phone:</strong> {html.escape(attempt.phone)}</p>
            <p><strong>Subject:</strong> {html.escape(attempt.subject)}</p>
            <p><strong>Message:</strong></p>
            <p style="background: white; padding: 15px; border-radius: 3px; border-left: 4px solid #007bff;">
                {_html_paragraphs(attempt.message)}
            </p>
        </div>
        {documents_html}
        <p style="color: #666; font-size: 12px; margin-top: 30px;">
            This email was sent from the Swagat Odisha contact form. Reference: {attempt.submission_id}
        </p>
    </div>
    """


def get_confirmation_email_template(attempt: SubmissionAttempt) -> str:
    """Generate HTML for the confirmation sent back to the submitter"""
    return f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
        <div style="text-align: center; margin-bottom: 30px;">
            <h1 style="color: #007bff; margin: 0;">Swagat Odisha</h1>
            <p style="color: #666; margin: 5px 0;">Educational Management System</p>
        </div>
        <h2 style="color: #333;">Thank you for contacting us!</h2>
        <p>Dear {html.escape(attempt.name)},</p>
        <p>We have received your message and will get back to you within 24 hours.</p>
        <div style="background: #f8f9fa; padding: 20px; border-radius: 5px; margin: 20px 0;">
            <h3 style="margin-top: 0; color: #333;">Your Message:</h3>
            <p style="background: white; padding: 15px; border-radius: 3px; border-left: 4px solid #28a745;">
                {_html_paragraphs(attempt.message)}
            </p>
        </div>
        <p>Best regards,<br><strong>Swagat Odisha Team</strong></p>
        <hr style="border: none; border-top: 1px solid #dee2e6; margin: 30px 0;">
        <p style="color: #666; font-size: 12px; text-align: center;">
            This is an automated response. Please do not reply to this email.
        </p>
    </div>
    """


def build_admin_notification(attempt: SubmissionAttempt) -> OutgoingEmail:
    to_email = get_notification_email()
    if not to_email:
        raise ValueError("CONTACT_EMAIL environment variable not configured")

    text_lines = [
        "New Contact Form Submission",
        "",
        f"Name: {attempt.name}",
        f"Email: {attempt.email}",
        f"Phone: {attempt.phone}",
        f"Subject: {attempt.subject}",
        "",
        "Message:",
        attempt.message,
    ]
    documents = _documents_listing(attempt)
    if documents:
        text_lines += ["", "Attached Documents:"] + [f"- {doc}" for doc in documents]

    subject = f"Contact Form: {attempt.subject}"
    if is_debug_mode():
        subject = f"[DEBUG] {subject}"

    return OutgoingEmail(
        template="contactFormAdmin",
        to=to_email,
        subject=subject,
        html=get_admin_email_template(attempt),
        text="\n".join(text_lines),
        reply_to=attempt.email,
        attachments=[
            Attachment(
                filename=uploaded.sanitized_name,
                path=uploaded.disk_path,
                content_type=uploaded.declared_mime_type or "application/octet-stream",
            )
            for uploaded in attempt.files
        ],
    )


def build_confirmation(attempt: SubmissionAttempt) -> OutgoingEmail:
    text = (
        f"Dear {attempt.name},\n\n"
        "We have received your message and will get back to you within 24 hours.\n\n"
        f"Your Message:\n{attempt.message}\n\n"
        "Best regards,\nSwagat Odisha Team"
    )
    return OutgoingEmail(
        template="contactFormUser",
        to=attempt.email,
        subject="Thank you for contacting Swagat Odisha",
        html=get_confirmation_email_template(attempt),
        text=text,
    )


EMAIL_TEMPLATES: Dict[str, Callable[[SubmissionAttempt], OutgoingEmail]] = {
    "contactFormAdmin": build_admin_notification,
    "contactFormUser": build_confirmation,
}


def render_email(template_name: str, attempt: SubmissionAttempt) -> OutgoingEmail:
    builder = EMAIL_TEMPLATES.get(template_name)
    if builder is None:
        raise ValueError(f"Email template '{template_name}' not found")
    return builder(attempt)


# ----- TRANSPORTS -----

class ResendTransport:
    """Primary transport: Resend HTTP API."""

    name = "resend"

    def __init__(
        self,
        api_key: Optional[str] = RESEND_API_KEY,
        from_email: Optional[str] = RESEND_FROM_EMAIL,
        from_name: str = RESEND_FROM_NAME,
        timeout: int = 30,
    ):
        self.api_key = api_key
        self.from_email = from_email
        self.from_name = from_name
        self.timeout = timeout

    def _encode_attachments(self, message: OutgoingEmail) -> List[dict]:
        encoded = []
        for attachment in message.attachments:
            with open(attachment.path, "rb") as f:
                encoded.append({
                    "filename": attachment.filename,
                    "content": base64.b64encode(f.read()).decode("ascii"),
                })
        return encoded

    def send(self, message: OutgoingEmail) -> Optional[str]:
        if not self.api_key:
            raise TransientDeliveryFailure(self.name, "RESEND_API_KEY not configured")
        if not self.from_email:
            raise TransientDeliveryFailure(self.name, "RESEND_FROM_EMAIL not configured")

        payload = {
            "from": formataddr((self.from_name, self.from_email)),
            "to": [message.to],
            "subject": message.subject,
            "html": message.html,
            "text": message.text,
        }
        if message.reply_to:
            payload["reply_to"] = message.reply_to

        try:
            if message.attachments:
                payload["attachments"] = self._encode_attachments(message)
            response = requests.post(
                RESEND_API_URL,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=payload,
                timeout=self.timeout,
            )
        except (requests.exceptions.RequestException, OSError) as e:
            raise TransientDeliveryFailure(self.name, str(e)) from e

        # Check for success (any 2xx status code)
        if 200 <= response.status_code < 300:
            try:
                data = response.json() if response.text else {}
            except ValueError:
                data = {}
            return data.get("id")

        raise TransientDeliveryFailure(
            self.name,
            f"Resend API returned status {response.status_code}: {response.text}",
            status_code=response.status_code,
        )


class SmtpTransport:
    """Fallback transport: direct SMTP with the configured mailbox credentials."""

    name = "smtp"

    def __init__(
        self,
        host: str = SMTP_HOST,
        port: int = SMTP_PORT,
        user: Optional[str] = SMTP_USER,
        password: Optional[str] = SMTP_PASSWORD,
        use_ssl: bool = SMTP_USE_SSL,
        timeout: int = 30,
    ):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.use_ssl = use_ssl
        self.timeout = timeout

    def build_message(self, message: OutgoingEmail) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = formataddr((RESEND_FROM_NAME, self.user))
        msg["To"] = message.to
        msg["Subject"] = message.subject
        if message.reply_to:
            msg["Reply-To"] = message.reply_to
        msg.set_content(message.text)
        msg.add_alternative(message.html, subtype="html")

        for attachment in message.attachments:
            content_type = attachment.content_type or mimetypes.guess_type(attachment.filename)[0]
            maintype, _, subtype = (content_type or "application/octet-stream").partition("/")
            with open(attachment.path, "rb") as f:
                msg.add_attachment(
                    f.read(),
                    maintype=maintype,
                    subtype=subtype or "octet-stream",
                    filename=attachment.filename,
                )
        return msg

    def send(self, message: OutgoingEmail) -> Optional[str]:
        if not self.user or not self.password:
            raise TransientDeliveryFailure(self.name, "SMTP_USER and SMTP_PASSWORD not configured")

        try:
            msg = self.build_message(message)
            context = ssl.create_default_context()
            if self.use_ssl:
                with smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout, context=context) as server:
                    server.login(self.user, self.password)
                    server.send_message(msg)
            else:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    server.login(self.user, self.password)
                    server.send_message(msg)
        except smtplib.SMTPAuthenticationError as e:
            raise TransientDeliveryFailure(self.name, f"SMTP authentication failed: {e}", status_code=e.smtp_code) from e
        except (smtplib.SMTPException, OSError) as e:
            raise TransientDeliveryFailure(self.name, str(e)) from e

        return msg.get("Message-ID")


# ----- ORCHESTRATION -----

class DeliveryOrchestrator:
    def __init__(self, transports: Optional[List] = None):
        self.transports = transports if transports is not None else [ResendTransport(), SmtpTransport()]

    def send_with_fallback(self, message: OutgoingEmail) -> DeliveryOutcome:
        """Try each transport in order until one accepts the message."""
        outcome = DeliveryOutcome(template=message.template, to=message.to, success=False)
        for transport in self.transports:
            try:
                outcome.message_id = transport.send(message)
            except TransientDeliveryFailure as e:
                print(f"DELIVERY: {message.template} via {transport.name} failed: {e}")
                outcome.errors.append(str(e))
                continue
            except Exception as e:
                print(f"DELIVERY: {message.template} via {transport.name} raised unexpectedly: {e}")
                outcome.errors.append(f"{transport.name}: {e}")
                continue

            outcome.success = True
            outcome.transport = transport.name
            print(f"DELIVERY: {message.template} sent to {message.to} via {transport.name}")
            break

        if not outcome.success:
            print(f"DELIVERY: {message.template} to {message.to} failed on every transport")
        return outcome

    def deliver(self, attempt: SubmissionAttempt) -> DeliveryReport:
        """
        Send the admin notification and the sender confirmation independently,
        then delete the submission's files no matter what happened.
        """
        report = DeliveryReport(submission_id=attempt.submission_id)
        try:
            attempt.transition(SubmissionState.DELIVERING)
            for template_name in ("contactFormAdmin", "contactFormUser"):
                try:
                    message = render_email(template_name, attempt)
                except Exception as e:
                    print(f"DELIVERY: Could not build {template_name} for {attempt.submission_id}: {e}")
                    report.outcomes.append(DeliveryOutcome(
                        template=template_name, to="", success=False, errors=[str(e)],
                    ))
                    continue
                report.outcomes.append(self.send_with_fallback(message))

            final_state = SubmissionState.DELIVERED if report.delivered else SubmissionState.DELIVERY_DEGRADED
            attempt.transition(final_state)
            report.state = final_state
        finally:
            report.files_removed = cleanup_files(attempt.files)
            if SubmissionState.CLEANED_UP in ALLOWED_TRANSITIONS[attempt.state]:
                attempt.transition(SubmissionState.CLEANED_UP)
            report.finished_at = datetime.now()

        print(
            f"DELIVERY: Submission {attempt.submission_id} finished as {report.state.value}, "
            f"removed {report.files_removed} file(s)"
        )
        return report


class DeliveryQueue:
    """
    Bounded worker pool for delivery jobs. Keeps counters and recent reports
    so background delivery is observable from /health.
    """

    def __init__(
        self,
        orchestrator: Optional[DeliveryOrchestrator] = None,
        max_workers: int = DELIVERY_WORKERS,
        history_size: int = 100,
    ):
        self.orchestrator = orchestrator or DeliveryOrchestrator()
        self.max_workers = max(max_workers, 1)
        self.recent_reports = deque(maxlen=history_size)
        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures = set()
        self._pending = 0
        self._lock = threading.Lock()
        self.counters = {"submitted": 0, "delivered": 0, "degraded": 0, "failed": 0}

    def _ensure_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="email-delivery"
            )
        return self._executor

    def _run(self, attempt: SubmissionAttempt) -> Optional[DeliveryReport]:
        try:
            report = self.orchestrator.deliver(attempt)
        except Exception as e:
            # deliver() cleans up in its own finally; this only guards the pool
            print(f"DELIVERY: Unexpected error for submission {attempt.submission_id}: {e}")
            cleanup_files(attempt.files)
            with self._lock:
                self.counters["failed"] += 1
                self._pending -= 1
            return None

        with self._lock:
            self.recent_reports.append(report)
            if report.state == SubmissionState.DELIVERED:
                self.counters["delivered"] += 1
            else:
                self.counters["degraded"] += 1
            self._pending -= 1
        return report

    def submit(self, attempt: SubmissionAttempt) -> Optional[Future]:
        with self._lock:
            try:
                future = self._ensure_executor().submit(self._run, attempt)
            except RuntimeError as e:
                print(f"DELIVERY: Could not queue submission {attempt.submission_id}: {e}")
                self.counters["failed"] += 1
                cleanup_files(attempt.files)
                if SubmissionState.CLEANED_UP in ALLOWED_TRANSITIONS[attempt.state]:
                    attempt.transition(SubmissionState.CLEANED_UP)
                return None
            self.counters["submitted"] += 1
            self._pending += 1
            self._futures.add(future)

        future.add_done_callback(self._discard)
        return future

    def _discard(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    @property
    def pending(self) -> int:
        with self._lock:
            return self._pending

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued delivery has finished. Returns False on timeout."""
        with self._lock:
            futures = list(self._futures)
        if not futures:
            return True
        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_pending: bool = True) -> None:
        with self._lock:
            executor, self._executor = self._executor, None
        if executor:
            executor.shutdown(wait=wait_for_pending)

    def stats(self) -> dict:
        with self._lock:
            stats = dict(self.counters)
            stats["pending"] = self._pending
            stats["workers"] = self.max_workers
        return stats


delivery_queue = DeliveryQueue()
