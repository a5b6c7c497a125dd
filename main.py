from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional
import os
import re

from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask
import uvicorn

import config
from abuse_tracker import AbuseTracker
from email_delivery import delivery_queue
from errors import AbuseDetected, SubmissionRejected, ValidationFailed
from file_security import file_validator
from rate_limiter import FixedWindowRateLimiter
from recaptcha import recaptcha_verifier
from spam_handler import spam_handler
from submission import (
    SubmissionAttempt,
    SubmissionState,
    cleanup_files,
    purge_stale_uploads,
    save_uploads,
)

abuse_tracker = AbuseTracker()
rate_limiter = FixedWindowRateLimiter()


def purge_orphaned_uploads():
    purge_stale_uploads(config.UPLOAD_DIR, config.STALE_UPLOAD_AGE)


@asynccontextmanager
async def lifespan(app: FastAPI):
    abuse_tracker.start_sweeper(config.ABUSE_SWEEP_INTERVAL, on_sweep=purge_orphaned_uploads)
    yield
    abuse_tracker.stop_sweeper()
    # Let in-flight deliveries finish so their files get cleaned up
    delivery_queue.shutdown(wait_for_pending=True)


app = FastAPI(lifespan=lifespan)

# Add CORS middleware to allow requests from the public website
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify your domain
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.exception_handler(SubmissionRejected)
async def submission_rejected_handler(request: Request, exc: SubmissionRejected):
    return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed form bodies get the same 400 envelope as field validation failures"""
    errors = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part != "body"]
        errors.append({
            "field": location[0] if location else "body",
            "message": error.get("msg", "Invalid value"),
        })
    print(f"MALFORMED REQUEST: {request.url.path} from {get_client_ip(request)}: {errors}")
    return JSONResponse(
        status_code=400,
        content=ValidationFailed("Validation errors", errors=errors).to_body(),
    )


def get_client_ip(request: Request) -> str:
    """Client IP, honouring the first X-Forwarded-For hop when behind a proxy"""
    if config.TRUST_PROXY_HEADERS:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


EMAIL_FORMAT = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def validate_fields(name: str, email: str, phone: str, subject: str, message: str) -> None:
    """Required field checks. Field errors are safe to return to the client."""
    errors = []
    if len(name) < 2:
        errors.append({"field": "name", "message": "Name must be at least 2 characters"})
    if not EMAIL_FORMAT.match(email):
        errors.append({"field": "email", "message": "Valid email is required"})
    if len(phone) < 10:
        errors.append({"field": "phone", "message": "Phone number must be at least 10 digits"})
    if len(subject) < 5:
        errors.append({"field": "subject", "message": "Subject must be at least 5 characters"})
    if len(message) < 10:
        errors.append({"field": "message", "message": "Message must be at least 10 characters"})

    if errors:
        raise ValidationFailed("Validation errors", errors=errors)


# ----- CONTACT FORM ENDPOINT -----

@app.post("/contact/submit")
async def submit_contact_form(
    request: Request,
    name: Optional[str] = Form(None),
    email: Optional[str] = Form(None),
    phone: Optional[str] = Form(None),
    subject: Optional[str] = Form(None),
    message: Optional[str] = Form(None),
    recaptcha_token: Optional[str] = Form(None),
    # Honeypot decoys, hidden from humans by the frontend
    website_url: Optional[str] = Form(None),
    company_website: Optional[str] = Form(None),
    url: Optional[str] = Form(None),
    documents: Optional[List[UploadFile]] = File(None),
):
    """
    Public contact form intake with optional document uploads.

    The response is sent as soon as every check has passed; notification and
    confirmation emails are delivered afterwards on the delivery worker pool.
    """
    client_ip = get_client_ip(request)
    attempt = SubmissionAttempt(ip=client_ip)

    allowed, retry_after = rate_limiter.hit(client_ip)
    if not allowed:
        print(f"RATE LIMIT: Contact form limit exceeded for IP {client_ip}")
        abuse_tracker.flag(client_ip)
        raise AbuseDetected(
            "Too many contact form submissions. Please try again later.",
            status_code=429,
            retry_after=retry_after,
            headers={"Retry-After": str(retry_after)},
        )
    attempt.transition(SubmissionState.RATE_CHECKED)

    if abuse_tracker.is_blocked(client_ip):
        print(f"BLOCKED IP: {client_ip} attempted contact form submission")
        raise AbuseDetected(
            "Access denied. Your IP has been blocked due to suspicious activity.",
            status_code=403,
        )

    try:
        attempt.files = await save_uploads(documents)
        await run_in_threadpool(file_validator.validate_batch, attempt.files)
        attempt.transition(SubmissionState.FILES_VALIDATED)

        honeypot = spam_handler.honeypot_value({
            "website_url": website_url,
            "company_website": company_website,
            "url": url,
        })
        if honeypot is not None:
            print(f"HONEYPOT TRIGGERED: IP {client_ip}, value {honeypot[:100]!r}")
            abuse_tracker.block(client_ip)
            raise AbuseDetected("Invalid form submission detected.")

        attempt.name = (name or "").strip()
        attempt.email = (email or "").strip().lower()
        attempt.phone = (phone or "").strip()
        attempt.subject = (subject or "").strip()
        attempt.message = (message or "").strip()
        validate_fields(attempt.name, attempt.email, attempt.phone, attempt.subject, attempt.message)

        verification = await run_in_threadpool(recaptcha_verifier.verify, recaptcha_token, client_ip)
        attempt.verification_score = verification.score
        if not verification.success:
            failures = abuse_tracker.record_verification_failure(client_ip)
            print(f"RECAPTCHA FAILED: IP {client_ip}, score {verification.score}, failures this hour {failures}")
            if failures >= config.RECAPTCHA_FAILURE_LIMIT:
                abuse_tracker.block(client_ip)
            raise AbuseDetected("Security verification failed. Please refresh and try again.")
        if verification.fail_open:
            print(f"RECAPTCHA SKIPPED: Failing open for IP {client_ip} ({verification.error or 'not configured'})")

        if not spam_handler.is_valid_email_domain(attempt.email):
            print(f"SUSPICIOUS EMAIL DOMAIN: IP {client_ip}, email {attempt.email}")
            raise ValidationFailed("Please use a valid email address.")

        spam_field = spam_handler.first_spam_field(
            name=attempt.name, subject=attempt.subject, message=attempt.message
        )
        if spam_field:
            attempt.is_spam = True
            print(f"SPAM DETECTED: Pattern matched in {spam_field} from IP {client_ip}")
            abuse_tracker.block(client_ip)
            raise AbuseDetected("Invalid form data detected.")
        attempt.transition(SubmissionState.CONTENT_CHECKED)

        recent_submissions = abuse_tracker.record_event(client_ip)
        if recent_submissions > config.MAX_SUBMISSIONS_PER_HOUR:
            print(f"EXCESSIVE SUBMISSIONS: IP {client_ip}, {recent_submissions} in the last hour")
            abuse_tracker.block(client_ip)
            raise AbuseDetected("Too many submissions. Please contact us directly.", status_code=429)

    except SubmissionRejected:
        attempt.transition(SubmissionState.REJECTED)
        cleanup_files(attempt.files)
        raise
    except Exception as e:
        attempt.transition(SubmissionState.REJECTED)
        cleanup_files(attempt.files)
        print(f"Unexpected error processing contact form from {client_ip}: {e}")
        raise SubmissionRejected(
            "Failed to submit contact form. Please try again later.", status_code=500
        )

    attempt.transition(SubmissionState.ACCEPTED)
    print(
        f"NEW SUBMISSION: {attempt.submission_id} from {attempt.name} ({attempt.email}), "
        f"{len(attempt.files)} document(s)"
    )

    return JSONResponse(
        status_code=200,
        content={
            "success": True,
            "message": "Contact form submitted successfully. We will get back to you soon!",
            "data": {
                "name": attempt.name,
                "email": attempt.email,
                "subject": attempt.subject,
                "documentsCount": len(attempt.files),
            },
        },
        # Runs after the response has been sent
        background=BackgroundTask(delivery_queue.submit, attempt),
    )


@app.get("/health")
async def health_check():
    """Simple health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "Contact Intake API",
        "debug_mode": config.is_debug_mode(),
        "abuse_tracker": abuse_tracker.stats(),
        "rate_limit": rate_limiter.stats(),
        "delivery": delivery_queue.stats(),
        "recaptcha_configured": bool(config.RECAPTCHA_SECRET_KEY),
    }


if __name__ == "__main__":
    # Resend variables (primary email transport)
    resend_env_vars = [
        "RESEND_API_KEY",
        "RESEND_FROM_EMAIL",
        "CONTACT_EMAIL",
    ]

    # SMTP variables (fallback transport)
    smtp_env_vars = [
        "SMTP_USER",
        "SMTP_PASSWORD",
    ]

    missing_resend_vars = [var for var in resend_env_vars if not os.getenv(var)]
    if missing_resend_vars:
        print(f"WARNING: Missing Resend environment variables: {', '.join(missing_resend_vars)}")
        print("Emails will go through the SMTP fallback only.")

    missing_smtp_vars = [var for var in smtp_env_vars if not os.getenv(var)]
    if missing_smtp_vars:
        print(f"WARNING: Missing SMTP environment variables: {', '.join(missing_smtp_vars)}")
        print("There is no fallback if Resend is unavailable.")

    if not config.RECAPTCHA_SECRET_KEY:
        print("WARNING: RECAPTCHA_SECRET_KEY not set - human verification will fail open")

    print(f"\n=== ABUSE PROTECTION CONFIGURATION ===")
    print(f"Rate limit: {config.RATE_LIMIT_REQUESTS} submissions per {config.RATE_LIMIT_WINDOW / 60:.0f} minutes")
    print(f"History window: {config.ABUSE_HISTORY_WINDOW / 3600:.0f} hours, sweep every {config.ABUSE_SWEEP_INTERVAL / 60:.0f} minutes")
    print(f"reCAPTCHA minimum score: {config.RECAPTCHA_MIN_SCORE}")
    print(f"Uploads: max {config.MAX_FILES} files, {config.MAX_FILE_SIZE / (1024 * 1024):.0f}MB each, stored in {config.UPLOAD_DIR}")
    print(f"Delivery workers: {config.DELIVERY_WORKERS}")

    print(f"\n=== DEBUG CONFIGURATION ===")
    print(f"DEBUG_MODE: {config.DEBUG_MODE}")
    print(f"Debug mode active: {config.is_debug_mode()}")
    if config.is_debug_mode() and not config.DEBUG_EMAIL:
        print("WARNING: DEBUG_EMAIL not set - emails will go to production email")
    print(f"===============================\n")

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
