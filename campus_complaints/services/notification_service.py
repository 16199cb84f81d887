from sqlalchemy.orm import Session
from typing import Optional
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from jinja2 import Template
from decouple import config
import httpx
import logging

from campus_complaints.models.models import Complaint, NotificationKind
from campus_complaints.schemas.schemas import NotificationResult
from campus_complaints.crud import crud

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

STATUS_LABELS = {
    "submitted": "Submitted",
    "in_review": "In Review",
    "resolved": "Resolved",
}

PRIORITY_COLORS = {
    "low": "#22c55e",
    "medium": "#eab308",
    "high": "#f97316",
    "critical": "#ef4444",
}

EMAIL_TEMPLATE = Template("""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2 style="color: #1f2937;">Hello {{ student_name }},</h2>
  <p>{{ intro }}</p>
  <div style="background: #f3f4f6; padding: 20px; border-radius: 8px; margin: 20px 0;">
    <h3 style="margin: 0 0 10px 0; color: #374151;">Complaint: {{ subject }}</h3>
    {% if comment %}
    <div style="background: white; padding: 15px; border-left: 4px solid #2563eb; margin-top: 15px;">
      <p style="margin: 0; color: #374151;">{{ comment }}</p>
    </div>
    {% else %}
    <p style="margin: 5px 0;"><strong>Previous {{ field }}:</strong> {{ old_label }}</p>
    <p style="margin: 5px 0;"><strong>New {{ field }}:</strong> <span style="color: {{ color }}; font-weight: bold;">{{ new_label }}</span></p>
    {% endif %}
  </div>
  <p>{{ outro }} <a href="{{ app_url }}">{{ app_url }}</a></p>
  <p style="color: #6b7280; margin-top: 30px;">Best regards,<br>The Complaint Management Team</p>
</div>
""", autoescape=True)

RESET_TEMPLATE = Template("""
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2 style="color: #1f2937;">Hello {{ user_name }},</h2>
  <p>We received a request to reset your password for the Campus Complaints portal.</p>
  <p>If you didn't request this password reset, please ignore this email.</p>
  <p><a href="{{ reset_url }}">Reset Password</a></p>
  <p>This link will expire in 1 hour for security reasons.</p>
</div>
""", autoescape=True)


def _capitalize(value: Optional[str]) -> str:
    value = value or ""
    return value[:1].upper() + value[1:]


class NotificationService:
    """
    Sends one transactional email per call to the complaint's owner.

    Delivery goes through the Resend HTTP API when RESEND_API_KEY is set,
    otherwise through SMTP when SMTP_USER is set. Failures are reported
    in the result and never retried.
    """

    def __init__(self):
        self.resend_api_key = config("RESEND_API_KEY", default="")
        self.smtp_host = config("SMTP_HOST", default="smtp.gmail.com")
        self.smtp_port = config("SMTP_PORT", cast=int, default=587)
        self.smtp_user = config("SMTP_USER", default="")
        self.smtp_password = config("SMTP_PASSWORD", default="")
        self.smtp_tls = config("SMTP_TLS", cast=bool, default=True)
        self.from_email = config("EMAIL_FROM", default="Complaint System <onboarding@resend.dev>")
        self.app_url = config("APP_URL", default="http://localhost:5173/dashboard")
        self.reset_url = config("RESET_PASSWORD_URL", default="http://localhost:5173/reset-password")
        self.timeout = config("EMAIL_TIMEOUT", cast=float, default=10.0)

    def notify(
        self,
        db: Session,
        kind: NotificationKind,
        complaint_id: int,
        old_value: Optional[str] = None,
        new_value: Optional[str] = None,
        comment: Optional[str] = None
    ) -> NotificationResult:
        """
        Compose and send one email about a change to a complaint
        """
        complaint = db.query(Complaint).filter(Complaint.id == complaint_id).first()
        if not complaint:
            logger.error(f"Notification skipped, complaint {complaint_id} not found")
            return NotificationResult(success=False, error="Complaint not found")

        profile = crud.profile.get_by_user(db, user_id=complaint.user_id)
        if not profile:
            logger.error(f"Notification skipped, no profile for user {complaint.user_id}")
            return NotificationResult(success=False, error="User profile not found")

        subject, html_content = self.render(
            NotificationKind(kind), complaint.subject, profile.full_name, old_value, new_value, comment
        )
        return self.send_email(profile.email, subject, html_content)

    def render(self, kind: NotificationKind, complaint_subject: str, student_name: str,
               old_value: Optional[str] = None, new_value: Optional[str] = None,
               comment: Optional[str] = None):
        context = {
            "student_name": student_name,
            "subject": complaint_subject,
            "app_url": self.app_url,
            "comment": None,
            "color": "#2563eb",
            "outro": "Log in to your dashboard to view more details.",
        }
        if kind == NotificationKind.STATUS_CHANGE:
            email_subject = f"Complaint Status Updated: {complaint_subject}"
            context.update(
                intro="Your complaint status has been updated.",
                field="Status",
                old_label=STATUS_LABELS.get(old_value or "", old_value),
                new_label=STATUS_LABELS.get(new_value or "", new_value),
            )
        elif kind == NotificationKind.PRIORITY_CHANGE:
            email_subject = f"Complaint Priority Updated: {complaint_subject}"
            context.update(
                intro="The priority level of your complaint has been updated.",
                field="Priority",
                old_label=_capitalize(old_value),
                new_label=_capitalize(new_value),
                color=PRIORITY_COLORS.get(new_value or "medium", "#6b7280"),
            )
        else:
            email_subject = f"New Response on Your Complaint: {complaint_subject}"
            context.update(
                intro="An administrator has responded to your complaint.",
                comment=comment or "",
                outro="Log in to your dashboard to view the full conversation and respond.",
            )
        return email_subject, EMAIL_TEMPLATE.render(**context)

    def send_email(self, to_email: str, subject: str, html_content: str) -> NotificationResult:
        if self.resend_api_key:
            return self._send_via_resend(to_email, subject, html_content)
        if self.smtp_user:
            return self._send_via_smtp(to_email, subject, html_content)
        logger.warning("Email service not configured, skipping email")
        return NotificationResult(success=False, error="Email service not configured")

    def _send_via_resend(self, to_email: str, subject: str, html_content: str) -> NotificationResult:
        try:
            response = httpx.post(
                RESEND_API_URL,
                headers={"Authorization": f"Bearer {self.resend_api_key}"},
                json={
                    "from": self.from_email,
                    "to": [to_email],
                    "subject": subject,
                    "html": html_content,
                },
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            logger.error(f"Error sending email to {to_email}: {str(e)}")
            return NotificationResult(success=False, error=str(e))

        if response.is_error:
            logger.error(f"Email provider rejected message to {to_email}: {response.status_code} {response.text}")
            return NotificationResult(success=False, error="Failed to send email")

        logger.info(f"Email sent successfully to {to_email}")
        return NotificationResult(success=True)

    def _send_via_smtp(self, to_email: str, subject: str, html_content: str) -> NotificationResult:
        try:
            msg = MIMEMultipart('alternative')
            msg['Subject'] = subject
            msg['From'] = self.from_email
            msg['To'] = to_email
            msg.attach(MIMEText(html_content, 'html'))

            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                if self.smtp_tls:
                    server.starttls()
                if self.smtp_user and self.smtp_password:
                    server.login(self.smtp_user, self.smtp_password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Error sending email to {to_email}: {str(e)}")
            return NotificationResult(success=False, error=str(e))

        logger.info(f"Email sent successfully to {to_email}")
        return NotificationResult(success=True)

    def send_password_reset_email(self, to_email: str, user_name: str, reset_token: str) -> NotificationResult:
        reset_url = f"{self.reset_url}?token={reset_token}"
        html_content = RESET_TEMPLATE.render(user_name=user_name, reset_url=reset_url)
        return self.send_email(to_email, "Password Reset Request - Campus Complaints", html_content)
