from datetime import datetime
from html import escape
from typing import Dict, List, Optional, Tuple

import resend

brand_colors = {
    "bg_primary": "#0b1020",
    "bg_secondary": "#111a33",
    "border": "rgba(148, 180, 255, 0.25)",
    "text_primary": "#f3f6ff",
    "text_secondary": "rgba(225, 232, 255, 0.82)",
    "text_muted": "rgba(225, 232, 255, 0.55)",
    "accent": "#7cc4ff",
}

ADDRESS_LINE_ORDER = ("line1", "line2", "city", "postcode", "country")


def format_money(value, currency: str) -> str:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        numeric = 0.0
    return f"{currency} {numeric:.2f}"


def format_shipping_address(address: Optional[Dict]) -> str:
    if not isinstance(address, dict):
        return ""
    parts = [str(address.get(field) or "").strip() for field in ADDRESS_LINE_ORDER]
    return ", ".join(part for part in parts if part)


def build_order_placed_email(
    customer_name: str,
    order_number: str,
    items: List[Dict],
    total,
    currency: str,
    shipping_address: Optional[Dict],
    placed_at: Optional[datetime] = None,
) -> Tuple[str, str]:
    """Render the order confirmation as (html, text)."""
    colors = brand_colors
    placed_at = placed_at if isinstance(placed_at, datetime) else datetime.utcnow()
    greeting_name = escape(customer_name or "there")
    shipping_line = escape(format_shipping_address(shipping_address))

    rows = []
    for item in items:
        quantity = int(item.get("quantity") or 0)
        line_total = float(item.get("price") or 0) * quantity
        rows.append(
            f"""<tr>
              <td style="padding:8px 0;color:{colors['text_primary']};">{escape(str(item.get('name') or 'Item'))}</td>
              <td style="padding:8px 0;text-align:center;color:{colors['text_secondary']};">x{quantity}</td>
              <td style="padding:8px 0;text-align:right;color:{colors['text_primary']};">{format_money(line_total, currency)}</td>
            </tr>"""
        )

    html_body = f"""<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <title>Order {escape(order_number)}</title>
  </head>
  <body style="margin:0;padding:0;background-color:{colors['bg_primary']};color:{colors['text_primary']};font-family:'Inter','Segoe UI',Arial,sans-serif;">
    <div style="padding:40px 16px;">
      <table width="100%" cellpadding="0" cellspacing="0" role="presentation" style="max-width:560px;margin:0 auto;border-radius:24px;background:{colors['bg_secondary']};border:1px solid {colors['border']};">
        <tr>
          <td style="padding:40px 36px;">
            <p style="margin:0 0 12px 0;text-transform:uppercase;letter-spacing:0.3em;font-size:12px;color:{colors['accent']};">Shopkeep</p>
            <h1 style="margin:0 0 14px 0;font-size:24px;">Thank you for your order, {greeting_name}!</h1>
            <p style="margin:0 0 24px 0;font-size:15px;line-height:1.7;color:{colors['text_secondary']};">
              Order <strong>{escape(order_number)}</strong> was placed on {placed_at.strftime('%Y-%m-%d %H:%M')} UTC and is now being processed.
            </p>
            <table width="100%" cellpadding="0" cellspacing="0" role="presentation" style="font-size:14px;">
              {''.join(rows)}
              <tr>
                <td colspan="2" style="padding:14px 0 0 0;border-top:1px solid {colors['border']};font-weight:700;">Total</td>
                <td style="padding:14px 0 0 0;border-top:1px solid {colors['border']};text-align:right;font-weight:700;">{format_money(total, currency)}</td>
              </tr>
            </table>
            <p style="margin:28px 0 0 0;font-size:14px;color:{colors['text_secondary']};">Shipping to: {shipping_line}</p>
            <p style="margin:28px 0 0 0;font-size:13px;color:{colors['text_muted']};">Regards,<br />The Shopkeep Team</p>
          </td>
        </tr>
      </table>
    </div>
  </body>
</html>"""

    item_lines = ", ".join(
        f"{item.get('name') or 'Item'} x{int(item.get('quantity') or 0)}" for item in items
    )
    text_body = (
        f"Hi {customer_name or 'there'}, thank you for your order {order_number} on "
        f"{placed_at.strftime('%Y-%m-%d %H:%M')}.\n"
        f"Items: {item_lines}.\n"
        f"Total: {format_money(total, currency)}.\n"
        f"Shipping to: {format_shipping_address(shipping_address)}\n\n"
        "Shopkeep Team"
    )
    return html_body, text_body


class ResendNotifier:
    def __init__(self, api_key: str, sender: str):
        self.api_key = (api_key or "").strip()
        self.sender = sender
        if self.api_key:
            resend.api_key = self.api_key

    def send(self, recipient_email: str, subject: str, html: str, text: str = ""):
        if not self.api_key:
            return False, "Resend API key is not configured."
        if not recipient_email:
            return False, "Missing recipient email."

        payload: Dict[str, object] = {
            "from": self.sender,
            "to": [recipient_email],
            "subject": subject,
            "html": html,
        }
        if text:
            payload["text"] = text

        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            return False, str(exc)

        if not isinstance(response, dict) or not response.get("id"):
            return False, str(response)

        return True, None
