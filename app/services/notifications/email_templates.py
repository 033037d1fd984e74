"""
HTML email templates per notification type, rendered with Jinja2.

Payment success, order placed and astrologer approved have dedicated
layouts; every other type uses the generic one.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from jinja2 import DictLoader, Environment, select_autoescape

from app.config import settings
from app.models.domain.notification_domain import NotificationType

_WRAPPER_OPEN = '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
_BUTTON_STYLE = "color: white; padding: 10px 20px; text-decoration: none; border-radius: 5px;"
_PANEL_STYLE = "margin: 20px 0; padding: 15px; background-color: #f5f5f5; border-radius: 5px;"

_TEMPLATES = {
    "payment_success.html": (
        _WRAPPER_OPEN
        + """
  <h2 style="color: #4CAF50;">Payment Successful! 💰</h2>
  <p>Your payment of ₹{{ data.amount }} has been processed successfully.</p>
  <p><strong>Transaction ID:</strong> {{ data.transactionId }}</p>
  <p><strong>Date:</strong> {{ today }}</p>
  <div style="{{ panel_style }}">
    <p style="margin: 0;">Your wallet has been credited and you can now enjoy our services!</p>
  </div>
  <a href="{{ base_url }}/wallet" style="background-color: #4CAF50; {{ button_style }}">View Wallet</a>
</div>
"""
    ),
    "order_placed.html": (
        _WRAPPER_OPEN
        + """
  <h2 style="color: #2196F3;">Order Confirmed! 📦</h2>
  <p>Thank you for your order. Here are the details:</p>
  <p><strong>Order Number:</strong> {{ data.orderNumber }}</p>
  <p><strong>Total Amount:</strong> ₹{{ data.totalAmount }}</p>
  <p><strong>Estimated Delivery:</strong> {{ data.estimatedDelivery or "3-5 business days" }}</p>
  <div style="{{ panel_style }}">
    <p style="margin: 0;">We'll send you updates as your order is processed and shipped.</p>
  </div>
</div>
"""
    ),
    "astrologer_approved.html": (
        _WRAPPER_OPEN
        + """
  <h2 style="color: #4CAF50;">Congratulations! You're now a True Astrotalk Astrologer! 🌟</h2>
  <p>Your application has been approved and you can now start offering consultations.</p>
  <div style="{{ panel_style }}">
    <h3>Next Steps:</h3>
    <ul>
      {% for step in next_steps %}<li>{{ step }}</li>
      {% endfor %}
    </ul>
  </div>
  <a href="{{ base_url }}/astrologer/dashboard" style="background-color: #4CAF50; {{ button_style }}">Go to Dashboard</a>
</div>
"""
    ),
    "default.html": (
        _WRAPPER_OPEN
        + """
  <h2 style="color: #333;">True Astrotalk</h2>
  <p>{{ data.message or body or "You have a new notification from True Astrotalk." }}</p>
  <a href="{{ action_url or base_url }}" style="background-color: #2196F3; {{ button_style }}">Open App</a>
</div>
"""
    ),
}

_SUBJECTS = {
    NotificationType.PAYMENT_SUCCESS: "Payment Successful - True Astrotalk",
    NotificationType.ORDER_PLACED: "Order Confirmation - True Astrotalk",
    NotificationType.ASTROLOGER_APPROVED: "Welcome to True Astrotalk - Application Approved! 🎉",
}

_DEFAULT_NEXT_STEPS = [
    "Complete your profile setup",
    "Set your consultation rates",
    "Go online to start receiving requests",
]

_env = Environment(
    loader=DictLoader(_TEMPLATES),
    autoescape=select_autoescape(default=True, default_for_string=True),
)


@dataclass(frozen=True)
class EmailContent:
    subject: str
    html: str
    text: str


def render_email(
    notification_type: NotificationType,
    data: dict[str, Any] | None,
    body: str,
    action_url: str | None = None,
) -> EmailContent:
    """Pick the template for `notification_type` and render it."""
    data = data or {}
    template_name = (
        f"{notification_type.value}.html"
        if notification_type in _SUBJECTS
        else "default.html"
    )

    html = _env.get_template(template_name).render(
        data=data,
        body=body,
        action_url=action_url,
        base_url=settings.FRONTEND_URL.rstrip("/"),
        today=datetime.now(UTC).strftime("%d/%m/%Y"),
        next_steps=data.get("nextSteps") or _DEFAULT_NEXT_STEPS,
        panel_style=_PANEL_STYLE,
        button_style=_BUTTON_STYLE,
    )

    return EmailContent(
        subject=_SUBJECTS.get(notification_type, "Notification from True Astrotalk"),
        html=html,
        text=body,
    )
