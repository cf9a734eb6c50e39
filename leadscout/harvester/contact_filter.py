"""
Contact filtering.

Only organizations a user can actually reach are kept: at least one of
email or phone must be present, and a present email must not be a
structural role account (noreply@, admin@, ...).
"""

import logging
from typing import Iterable, List, Optional

from .contracts import Organization

logger = logging.getLogger(__name__)

BLOCKED_LOCAL_PARTS = frozenset({
    "test",
    "noreply",
    "no-reply",
    "no_reply",
    "donotreply",
    "do-not-reply",
    "admin",
    "administrator",
    "postmaster",
    "webmaster",
    "hostmaster",
    "mailer-daemon",
    "root",
    "example",
    "user",
    "email",
})


def email_local_part(email: str) -> str:
    return email.strip().split("@", 1)[0].casefold()


def is_blocked_email(email: Optional[str]) -> bool:
    """True for role-account local parts at any domain, and for strings that are not emails."""
    if not email or "@" not in email:
        return True
    return email_local_part(email) in BLOCKED_LOCAL_PARTS


def pick_primary_email(emails: Iterable[str]) -> Optional[str]:
    """First usable email in provider order."""
    for email in emails:
        if email and not is_blocked_email(email):
            return email.strip()
    return None


def has_usable_contact(item: Organization) -> bool:
    email = (item.email or "").strip()
    phone = (item.phone or "").strip()
    if not email and not phone:
        return False
    if email and is_blocked_email(email):
        return False
    return True


def filter_with_contacts(items: Iterable[Organization]) -> List[Organization]:
    items = list(items)
    kept = [item for item in items if has_usable_contact(item)]
    logger.info(f"CONTACT_FILTER: kept={len(kept)} dropped={len(items) - len(kept)}")
    return kept
