"""Notification e-mail module.

Central place to build and send domain specific notification emails.
Each function returns a bool indicating best-effort success (True also when
logged in dev fallback mode). Callers never fail their own operation because
an e-mail could not be delivered.
"""
import html
import logging
import re
from typing import Any, Iterable, Mapping, Sequence

from pymongo.errors import PyMongoError

from . import db as db_mod
from .datetime_utils import now_utc
from .settings import get_settings
from .utils import send_email

logger = logging.getLogger('email')

# Match literal double-curly placeholders like {{ variable }}.
PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([a-zA-Z0-9_\.]+)\s*\}\}")


def render_placeholders(text: str, variables: Mapping[str, Any]) -> str:
    """Substitute {{placeholders}} with HTML-escaped values; unknown names become ''."""
    def _sub(match):
        value: Any = variables
        for part in match.group(1).split('.'):
            if isinstance(value, Mapping) and part in value:
                value = value[part]
            else:
                return ''
        return html.escape(str(value))
    return PLACEHOLDER_PATTERN.sub(_sub, text)


async def _render_template(key: str, fallback_subject: str, fallback_lines: Iterable[str],
                           variables: Mapping[str, Any] | None = None) -> tuple[str, str, str | None]:
    """Load template by key and render it; returns (subject, text_body, html_body).

    Falls back to the plaintext subject/lines when the template is missing.
    `current_date` and `current_year` are always available to templates.
    """
    now = now_utc()
    merged = {'current_date': now.strftime('%Y-%m-%d'), 'current_year': str(now.year), **(variables or {})}
    try:
        tpl = await db_mod.db.email_templates.find_one({'key': key})
    except PyMongoError as exc:
        logger.warning('email.template.lookup_failed key=%s error=%s', key, exc)
        tpl = None
    text_fallback = "\n".join(fallback_lines) + "\n"
    if not tpl:
        return fallback_subject, text_fallback, None
    subject = render_placeholders(tpl.get('subject') or fallback_subject, merged)
    html_body = render_placeholders(tpl.get('html_body') or '', merged)
    text_body = re.sub(r'<[^>]+>', ' ', html_body).strip() or text_fallback
    return subject, text_body, html_body or None


async def _send(to: Sequence[str] | str, subject: str, lines: Iterable[str], template_key: str,
                variables: Mapping[str, Any] | None = None) -> bool:
    lines = list(lines)
    subject, text_body, html_body = await _render_template(template_key, subject, lines, variables)
    try:
        return await send_email(to=to, subject=subject, body=text_body, html_body=html_body, category=template_key)
    except ValueError:
        logger.warning('email.skipped reason=no_recipient category=%s', template_key)
        return False


# Tickets
async def send_ticket_email(to: str, attendee_name: str, order_id: str, event_name: str,
                            tickets: Sequence[Mapping[str, Any]]) -> bool:
    ticket_center_url = f"{get_settings().app_base_url.rstrip('/')}/ticket-center?orderId={order_id}"
    summary = ', '.join(f"{t.get('ticket_type')} (ID: {str(t.get('qr_code'))[:8]}...)" for t in tickets)
    lines = [
        f"Hi {attendee_name},",
        f"Thank you for your purchase! Your tickets for {event_name} are ready:",
        ticket_center_url,
        f"Tickets: {summary}",
        f"Your Order ID is: {order_id}",
    ]
    return await _send(to, f"Your Tickets for {event_name}", lines, 'ticket_confirmation', {
        'event_name': event_name,
        'attendee_name': attendee_name,
        'ticket_center_url': ticket_center_url,
        'ticket_summary': summary,
        'order_id': order_id,
    })


# Invitations
async def send_invitation_email(to: str, role: str, invitation_link: str, listing_name: str | None = None) -> bool:
    ttl = get_settings().invitation_ttl_hours
    suffix = f" for {listing_name}" if listing_name else ''
    lines = [
        "Hi!",
        f"You have been invited to join NaksYetu as {role}{suffix}.",
        f"Accept the invitation here: {invitation_link}",
        f"This link expires in {ttl} hours.",
    ]
    return await _send(to, f"You've been invited to join NaksYetu as {role}", lines, 'invitation', {
        'role': role,
        'listing_suffix': suffix,
        'invitation_link': invitation_link,
        'ttl_hours': ttl,
    })


# Payouts
async def send_payout_status_email(to: str, name: str, status: str, amount_requested: float,
                                   amount_disbursed: float, reason: str | None = None) -> bool:
    status_label = status.replace('_', ' ')
    lines = [
        f"Hi {name},",
        f"Your payout request of Ksh {amount_requested:,.2f} was {status_label}.",
        f"Amount disbursed: Ksh {amount_disbursed:,.2f}",
    ]
    if reason:
        lines.append(f"Reason: {reason}")
    return await _send(to, f"Your payout request was {status_label}", lines, 'payout_status', {
        'name': name,
        'status_label': status_label,
        'amount_requested': f"{amount_requested:,.2f}",
        'amount_disbursed': f"{amount_disbursed:,.2f}",
        'reason': f"Reason: {reason}" if reason else '',
    })


# Campaigns
async def send_campaign_invitation_email(to: str, name: str, organizer_name: str, listing_name: str,
                                         code: str, commission: str) -> bool:
    campaigns_url = f"{get_settings().app_base_url.rstrip('/')}/influencer/campaigns"
    lines = [
        f"Hi {name},",
        f"{organizer_name} invited you to promote {listing_name} with the code {code}.",
        f"Commission: {commission}",
        f"Review the campaign: {campaigns_url}",
    ]
    return await _send(to, f"New campaign invitation for {listing_name}", lines, 'campaign_invitation', {
        'name': name,
        'organizer_name': organizer_name,
        'listing_name': listing_name,
        'code': code,
        'commission': commission,
        'campaigns_url': campaigns_url,
    })


# Merchandise
async def send_merch_pickup_email(to: str, name: str, confirmation_code: str, total: float,
                                  items: Sequence[Mapping[str, Any]]) -> bool:
    summary = ', '.join(f"{i.get('quantity')} x {i.get('product_name')}" for i in items)
    lines = [
        f"Hi {name},",
        f"We received your payment of Ksh {total:,.2f} for {summary}.",
        f"Show the code {confirmation_code} when you collect your order.",
    ]
    return await _send(to, "Your NaksYetu merch order is ready for pickup", lines, 'merch_pickup', {
        'name': name,
        'total': f"{total:,.2f}",
        'items': summary,
        'confirmation_code': confirmation_code,
    })
