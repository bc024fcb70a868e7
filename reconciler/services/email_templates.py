# reconciler/services/email_templates.py
from datetime import datetime


def _money(amount, currency):
    if amount is None:
        return "N/A"
    return f"{amount / 100:.2f} {(currency or 'usd').upper()}"


def _layout(title, body, color="#007bff"):
    return f"""
        <!DOCTYPE html>
        <html>
        <head>
            <style>
                body {{ font-family: Arial, sans-serif; line-height: 1.6; }}
                .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
                .header {{ background: {color}; color: white; padding: 20px; text-align: center; }}
                .content {{ padding: 30px; background: #f8f9fa; }}
                .footer {{ margin-top: 30px; padding-top: 20px; border-top: 1px solid #dee2e6; color: #6c757d; }}
            </style>
        </head>
        <body>
            <div class="container">
                <div class="header"><h1>{title}</h1></div>
                <div class="content">{body}</div>
                <div class="footer">
                    <p>&copy; {datetime.utcnow().year} Billing. All rights reserved.</p>
                    <p>This is an automated message, please do not reply to this email.</p>
                </div>
            </div>
        </body>
        </html>
        """


class EmailTemplates:
    """Email template definitions, one per notification kind"""

    @staticmethod
    def welcome(data):
        subject = "Welcome aboard"
        body = f"<p>Your subscription <strong>{data.get('subscription_id')}</strong> has been created.</p>"
        return subject, _layout("Welcome", body)

    @staticmethod
    def trial_converted(data):
        subject = "Your trial has converted to a paid subscription"
        body = (
            f"<p>Thanks for staying with us. Subscription <strong>{data.get('subscription_id')}</strong> "
            f"is now active.</p>"
        )
        return subject, _layout("Trial Converted", body, color="#28a745")

    @staticmethod
    def trial_ending(data):
        subject = "Your trial is ending soon"
        body = (
            f"<p>Your trial for subscription <strong>{data.get('subscription_id')}</strong> ends on "
            f"{data.get('trial_end', 'N/A')}.</p>"
            "<p>Add a payment method to keep your access.</p>"
        )
        return subject, _layout("Trial Ending", body, color="#ffc107")

    @staticmethod
    def payment_failed(data):
        subject = "Payment Failed - Action Required"
        body = (
            "<p>We were unable to process your recent payment.</p>"
            f"<p><strong>Reference:</strong> {data.get('payment_reference', 'N/A')}<br>"
            f"<strong>Amount Due:</strong> {_money(data.get('amount'), data.get('currency'))}</p>"
            "<p>We will retry automatically. Updating your payment method avoids interruption.</p>"
        )
        return subject, _layout("Payment Failed", body, color="#dc3545")

    @staticmethod
    def payment_retry_exhausted(data):
        subject = "We could not collect your payment"
        body = (
            f"<p>After {data.get('attempts', 3)} attempts we could not collect "
            f"{_money(data.get('amount'), data.get('currency'))}.</p>"
            "<p>Please update your payment method to keep your subscription.</p>"
        )
        return subject, _layout("Payment Unsuccessful", body, color="#dc3545")

    @staticmethod
    def dunning_reminder(data):
        days = data.get("days_past_due")
        subject = f"Your account is {days} day{'s' if days != 1 else ''} past due"
        body = (
            f"<p>Subscription <strong>{data.get('subscription_id')}</strong> has been past due for "
            f"{days} day(s).</p>"
            f"<p><strong>Outstanding:</strong> {_money(data.get('amount'), data.get('currency'))}</p>"
            "<p>Your subscription will be canceled if the balance is not settled.</p>"
        )
        return subject, _layout("Payment Overdue", body, color="#dc3545")

    @staticmethod
    def subscription_canceled(data):
        subject = "Your subscription has been canceled"
        body = (
            f"<p>Subscription <strong>{data.get('subscription_id')}</strong> was canceled on "
            f"{data.get('canceled_at', 'N/A')}.</p>"
        )
        if data.get("reason"):
            body += f"<p>Reason: {data['reason']}</p>"
        return subject, _layout("Subscription Canceled", body, color="#6c757d")

    @staticmethod
    def upcoming_invoice(data):
        subject = "Your upcoming invoice"
        body = (
            f"<p>Your next invoice of {_money(data.get('amount'), data.get('currency'))} "
            f"is due on {data.get('due_date', 'N/A')}.</p>"
        )
        return subject, _layout("Upcoming Invoice", body)

    @classmethod
    def render(cls, template_kind, data):
        builder = getattr(cls, template_kind, None)
        if builder is None or template_kind == "render":
            raise ValueError(f"Unknown notification template: {template_kind}")
        return builder(data or {})
