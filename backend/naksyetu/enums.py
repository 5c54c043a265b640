from enum import Enum


class _NormalizingEnum(str, Enum):
    """String enum accepting case/whitespace variants on input."""

    @classmethod
    def normalize(cls, value):
        if value is None or value == '':
            return None
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        try:
            return cls(normalized)
        except ValueError as exc:  # noqa: BLE001
            allowed = ', '.join(member.value for member in cls)
            raise ValueError(f"{cls.field_name()} must be one of: {allowed}") from exc

    @classmethod
    def field_name(cls) -> str:
        return cls.__name__.lower()


class UserRole(_NormalizingEnum):
    attendee = 'attendee'
    organizer = 'organizer'
    club = 'club'
    influencer = 'influencer'
    admin = 'admin'
    super_admin = 'super-admin'
    verifier = 'verifier'
    developer = 'developer'

    @classmethod
    def field_name(cls) -> str:
        return 'role'


ADMIN_ROLES = {UserRole.admin.value, UserRole.super_admin.value}
# Roles allowed to verify tickets for any event without an assignment.
GLOBAL_VERIFIER_ROLES = {UserRole.admin.value, UserRole.super_admin.value, UserRole.organizer.value}


class ListingType(_NormalizingEnum):
    event = 'event'
    tour = 'tour'
    nightlife = 'nightlife'

    @property
    def collection(self) -> str:
        return 'nightlife' if self is ListingType.nightlife else f'{self.value}s'


class ListingStatus(_NormalizingEnum):
    draft = 'draft'
    submitted = 'submitted for review'
    published = 'published'
    rejected = 'rejected'
    taken_down = 'taken-down'
    archived = 'archived'


ORGANIZER_LISTING_TRANSITIONS = {ListingStatus.taken_down, ListingStatus.submitted, ListingStatus.archived}
ADMIN_LISTING_TRANSITIONS = {ListingStatus.published, ListingStatus.rejected, ListingStatus.taken_down, ListingStatus.archived}


class OrderStatus(_NormalizingEnum):
    pending = 'pending'
    completed = 'completed'
    failed = 'failed'


class PaymentType(_NormalizingEnum):
    full = 'full'
    booking = 'booking'


class TicketStatus(_NormalizingEnum):
    valid = 'valid'
    used = 'used'
    cancelled = 'cancelled'


class ProductStatus(_NormalizingEnum):
    active = 'active'
    taken_down = 'taken-down'

    @classmethod
    def field_name(cls) -> str:
        return 'status'


class MerchOrderStatus(_NormalizingEnum):
    pending = 'pending'
    awaiting_pickup = 'awaiting_pickup'
    completed = 'completed'
    failed = 'failed'


class DiscountType(_NormalizingEnum):
    percentage = 'percentage'
    fixed = 'fixed'


class CampaignStatus(_NormalizingEnum):
    pending = 'pending'
    accepted = 'accepted'
    rejected = 'rejected'


class ProcessingFeePayer(_NormalizingEnum):
    customer = 'customer'
    organizer = 'organizer'


class PayoutStatus(_NormalizingEnum):
    pending = 'pending'
    accepted = 'accepted'
    partially_accepted = 'partially_accepted'
    rejected = 'rejected'


class InvitationStatus(_NormalizingEnum):
    pending = 'pending'
    accepted = 'accepted'
    void = 'void'


class ReviewStatus(_NormalizingEnum):
    pending = 'pending'
    approved = 'approved'
    rejected = 'rejected'

    @classmethod
    def field_name(cls) -> str:
        return 'status'


# Roles a user may apply for through a partner request.
PARTNER_ROLES = {UserRole.organizer.value, UserRole.influencer.value, UserRole.club.value}


class NotificationType(_NormalizingEnum):
    new_order = 'new_order'
    partner_request = 'partner_request'
    payout_request = 'payout_request'
    payout_update = 'payout_update'
    listing_update = 'listing_update'
    ad_submission = 'ad_submission'


def normalized_value(enum_cls, value, default=None):
    """Return the normalized string value for an enum, falling back to default when invalid."""
    try:
        normalized = enum_cls.normalize(value)
    except ValueError:
        return default
    if normalized is None:
        return default
    return normalized.value
