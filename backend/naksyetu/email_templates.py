"""Default email templates helper.

Ensures the default templates exist in the `email_templates` collection at
application startup. Admins can edit the stored copies; rendering happens in
`notifications._render_template`.
"""
import logging

from pymongo.errors import PyMongoError

from . import db as db_mod
from .datetime_utils import now_utc

logger = logging.getLogger('email')

_WRAPPER = (
    '<div style="font-family: -apple-system, system-ui, Roboto, Arial, sans-serif; '
    'color:#111; line-height:1.6;">{content}'
    '<p style="margin-top:18px; color:#6b7280;">NaksYetu</p></div>'
)

_BUTTON = (
    '<p style="text-align:center; margin:30px 0;"><a href="{{{{{var}}}}}" '
    'style="display:inline-block; padding:12px 24px; background-color:#E76F51; color:#fff; '
    'text-decoration:none; border-radius:5px; font-weight:bold;">{label}</a></p>'
)

DEFAULT_TEMPLATES = [
    {
        'key': 'ticket_confirmation',
        'subject': 'Your Tickets for {{event_name}}',
        'html_body': _WRAPPER.format(content=(
            '<h1>Your Tickets for {{event_name}} are Ready!</h1>'
            '<p>Hi {{attendee_name}},</p>'
            '<p>Thank you for your purchase! You can view and download your tickets at any time:</p>'
            + _BUTTON.format(var='ticket_center_url', label='View My Tickets') +
            '<p>Tickets: {{ticket_summary}}</p>'
            '<p>Your Order ID is: {{order_id}}</p>'
            '<p>We look forward to seeing you at the event!</p>'
        )),
        'description': 'Sent after a successful M-Pesa payment with the generated tickets.',
        'variables': ['event_name', 'attendee_name', 'ticket_center_url', 'ticket_summary', 'order_id'],
    },
    {
        'key': 'invitation',
        'subject': "You've been invited to join NaksYetu as {{role}}",
        'html_body': _WRAPPER.format(content=(
            '<p>Hi!</p>'
            '<p>You have been invited to join NaksYetu as <strong>{{role}}</strong>{{listing_suffix}}.</p>'
            + _BUTTON.format(var='invitation_link', label='Accept invitation') +
            '<p style="font-size:13px; color:#6b7280;">This link expires in {{ttl_hours}} hours.</p>'
        )),
        'description': 'Role invitation with a short link to the accept page.',
        'variables': ['role', 'listing_suffix', 'invitation_link', 'ttl_hours'],
    },
    {
        'key': 'payout_status',
        'subject': 'Your payout request was {{status_label}}',
        'html_body': _WRAPPER.format(content=(
            '<p>Hi {{name}},</p>'
            '<p>Your payout request of Ksh {{amount_requested}} was <strong>{{status_label}}</strong>.</p>'
            '<p>Amount disbursed: Ksh {{amount_disbursed}}</p>'
            '<p>{{reason}}</p>'
        )),
        'description': 'Sent to an organizer or influencer when a payout request is decided.',
        'variables': ['name', 'amount_requested', 'status_label', 'amount_disbursed', 'reason'],
    },
    {
        'key': 'campaign_invitation',
        'subject': 'New campaign invitation for {{listing_name}}',
        'html_body': _WRAPPER.format(content=(
            '<p>Hi {{name}},</p>'
            '<p>{{organizer_name}} invited you to promote <strong>{{listing_name}}</strong> with the code '
            '<strong>{{code}}</strong>. Commission: {{commission}}.</p>'
            + _BUTTON.format(var='campaigns_url', label='Review campaign')
        )),
        'description': 'Sent to an influencer when an organizer assigns them a promocode.',
        'variables': ['name', 'organizer_name', 'listing_name', 'code', 'commission', 'campaigns_url'],
    },
    {
        'key': 'merch_pickup',
        'subject': 'Your NaksYetu merch order is ready for pickup',
        'html_body': _WRAPPER.format(content=(
            '<p>Hi {{name}},</p>'
            '<p>We received your payment of Ksh {{total}} for {{items}}.</p>'
            '<p>Show the code <strong>{{confirmation_code}}</strong> when you collect your order.</p>'
        )),
        'description': 'Sent when a merchandise order is paid and waiting for pickup.',
        'variables': ['name', 'total', 'items', 'confirmation_code'],
    },
]


async def ensure_default_templates():
    """Insert DEFAULT_TEMPLATES that are missing from `email_templates`.

    Idempotent; existing (possibly admin-edited) templates are left untouched.
    """
    for tpl in DEFAULT_TEMPLATES:
        try:
            existing = await db_mod.db.email_templates.find_one({'key': tpl['key']})
            if existing:
                continue
            await db_mod.db.email_templates.insert_one({**tpl, 'updated_at': now_utc()})
        except PyMongoError as exc:
            logger.warning('email.templates.seed_failed key=%s error=%s', tpl['key'], exc)
