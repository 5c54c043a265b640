"""Application routers package.

This module exposes the individual router modules for easier imports.
"""

__all__ = [
    'admin', 'checkout', 'influencer', 'invitations', 'listings', 'notifications', 'organizer',
    'promocodes', 'shortlinks', 'site', 'users', 'verify',
]
