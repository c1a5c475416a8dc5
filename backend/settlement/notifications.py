"""
Payment Email Service using Resend
Sends payment success, pending-review and rejection emails.

Every send attempt is recorded under the sent_emails key so admins can
review what went out. Without a RESEND_API_KEY the email is only recorded.
"""

import os
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import List

import resend

from .config import SENT_EMAILS_KEY
from .models import Payment, User
from .store import KeyValueStore

logger = logging.getLogger(__name__)

# Email Templates
EMAIL_TEMPLATES = {
    "payment_success": {
        "subject": "✅ Your Z-Ai Pro Upgrade is Complete!",
        "html": """
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
            <p>Hi {{name}},</p>
            <p>Great news! Your payment of <strong>{{amount}}</strong> via {{method}} has been successfully processed.</p>
            <p>Your account has been upgraded to the Pro plan, and you now have access to all premium features, including:</p>
            <ul>
                <li>Unlimited image and video generations</li>
                <li>No watermarks on your creations</li>
                <li>Access to the Scene Studio and all advanced tools</li>
            </ul>
            <p>You can view your receipt details in your <a href="{{history_url}}">Purchase History</a>.</p>
            <p>Happy creating!<br>- The Z-Ai Team</p>
        </div>
        """
    },
    "payment_pending": {
        "subject": "⏳ Your Z-Ai Payment is Under Review",
        "html": """
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
            <p>Hi {{name}},</p>
            <p>We've received your payment submission of <strong>{{amount}}</strong> via {{method}}.</p>
            <p>Your payment is currently being verified by our team. This process is usually completed within 24 hours.</p>
            <p>We'll send you another email as soon as your payment is confirmed and your Pro plan is activated.</p>
            <p>Thanks for your patience!<br>- The Z-Ai Team</p>
        </div>
        """
    },
    "payment_rejected": {
        "subject": "❌ There Was an Issue With Your Z-Ai Payment",
        "html": """
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
            <p>Hi {{name}},</p>
            <p>Unfortunately, we were unable to process your recent payment attempt of <strong>{{amount}}</strong> for the Z-Ai Pro plan.</p>
            <p>Reason for rejection:<br><em>"{{reason}}"</em></p>
            <p>Please review the reason above and try making the payment again. If you believe this is an error, please contact our support team.</p>
            <p>- The Z-Ai Team</p>
        </div>
        """
    },
}


class PaymentEmailService:
    """Transactional payment emails"""

    def __init__(self, store: KeyValueStore):
        self.store = store
        self.api_key = os.environ.get("RESEND_API_KEY")
        self.sender_email = os.environ.get("SENDER_EMAIL", "onboarding@resend.dev")
        self.base_url = os.environ.get("APP_BASE_URL", "http://localhost:3000")

    def _replace_variables(self, template: str, variables: dict) -> str:
        """Replace template variables"""
        result = template
        for key, value in variables.items():
            result = result.replace(f"{{{{{key}}}}}", str(value))
        return result

    async def _record(self, entry: dict) -> None:
        await self.store.update(SENT_EMAILS_KEY, lambda rows: rows + [entry], default=[])

    async def list_sent_emails(self) -> List[dict]:
        return await self.store.get(SENT_EMAILS_KEY, [])

    async def send_email(self, to_email: str, template_name: str, variables: dict) -> dict:
        """Render a template, send it through Resend if configured, and record the attempt"""
        template = EMAIL_TEMPLATES[template_name]
        variables.setdefault("history_url", f"{self.base_url}/purchases")

        subject = self._replace_variables(template["subject"], variables)
        html = self._replace_variables(template["html"], variables)
        entry = {
            "id": f"email-{uuid.uuid4().hex[:12]}",
            "to": to_email,
            "template": template_name,
            "subject": subject,
            "body": html,
            "sent_at": datetime.now(timezone.utc).isoformat(),
        }

        if not self.api_key:
            logger.info(f"Email service not configured - recorded '{subject}' for {to_email}")
            entry["status"] = "recorded"
            await self._record(entry)
            return {"status": "recorded", "email_id": entry["id"]}

        resend.api_key = self.api_key
        params = {
            "from": self.sender_email,
            "to": [to_email],
            "subject": subject,
            "html": html
        }

        try:
            email_result = await asyncio.to_thread(resend.Emails.send, params)
        except Exception as e:
            logger.error(f"Failed to send email: {e}")
            entry.update({"status": "failed", "error": str(e)})
            await self._record(entry)
            return {"status": "error", "reason": str(e)}

        entry.update({"status": "sent", "provider_id": email_result.get("id")})
        await self._record(entry)
        return {"status": "success", "email_id": entry["id"]}

    def _variables(self, user: User, payment: Payment) -> dict:
        return {
            "name": user.email.split("@")[0],
            "amount": f"${payment.amount_paid:.2f}",
            "method": payment.method_name,
        }

    async def send_payment_success_email(self, user: User, payment: Payment):
        return await self.send_email(user.email, "payment_success", self._variables(user, payment))

    async def send_payment_pending_email(self, user: User, payment: Payment):
        return await self.send_email(user.email, "payment_pending", self._variables(user, payment))

    async def send_payment_rejected_email(self, user: User, payment: Payment, reason: str):
        variables = self._variables(user, payment)
        variables["reason"] = reason
        return await self.send_email(user.email, "payment_rejected", variables)
