"""OTP email jobs."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Tuple

from pydantic import BaseModel, Field, field_validator

from storefront.job_queue import JobContext, JobDefinition

from .emailer import Emailer

logger = logging.getLogger(__name__)

SEND_REGISTRATION_OTP = "send-registration-otp"
RESEND_OTP = "resend-otp"
SEND_PASSWORD_RESET_OTP = "send-password-reset-otp"
RESEND_PASSWORD_RESET_OTP = "resend-password-reset-otp"

# kind -> (email subject, result message)
OTP_KINDS: Dict[str, Tuple[str, str]] = {
    SEND_REGISTRATION_OTP: ("Verify your account", "Registration OTP sent successfully"),
    RESEND_OTP: ("Verify your account", "Resend OTP sent successfully"),
    SEND_PASSWORD_RESET_OTP: ("Reset your password", "Password reset OTP sent successfully"),
    RESEND_PASSWORD_RESET_OTP: ("Reset your password", "Resend password reset OTP sent successfully"),
}


class OtpPayload(BaseModel):
    """Payload shared by all OTP job kinds."""
    user_id: str = Field(min_length=1)
    email: str = Field(min_length=3)
    username: str = Field(min_length=1)
    otp: str = Field(min_length=4, max_length=12)


class OtpJobRequest(OtpPayload):
    """Body of ``POST /otp/jobs``."""
    kind: str = SEND_REGISTRATION_OTP

    @field_validator("kind")
    @classmethod
    def known_kind(cls, value: str) -> str:
        if value not in OTP_KINDS:
            raise ValueError(f"Unknown OTP job kind: {value}")
        return value


def render_otp_email(kind: str, username: str, otp: str) -> Tuple[str, str]:
    subject, _ = OTP_KINDS[kind]
    body = (
        f"Hi {username},\n\n"
        f"Your verification code is {otp}.\n"
        "It expires in 10 minutes. If you did not request it, ignore this email.\n"
    )
    return subject, body


class OtpJobs:
    """Handlers for the OTP queue."""

    def __init__(self, emailer: Emailer):
        self.emailer = emailer

    def definitions(self) -> List[JobDefinition]:
        return [JobDefinition(kind, OtpPayload, self.send_otp) for kind in OTP_KINDS]

    async def send_otp(self, ctx: JobContext, payload: OtpPayload) -> Dict[str, Any]:
        await ctx.update_progress(10)
        subject, body = render_otp_email(ctx.kind, payload.username, payload.otp)

        await ctx.update_progress(30)
        await self.emailer.send(payload.email, subject, body)
        logger.info(f"{ctx.kind} delivered to {payload.email} (job {ctx.job_id})")

        await ctx.update_progress(100)
        return {
            "message": OTP_KINDS[ctx.kind][1],
            "user_id": payload.user_id,
            "email": payload.email,
            "username": payload.username,
            "otp_sent": True,
            "timestamp": datetime.utcnow().isoformat(),
        }
