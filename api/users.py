"""
Identity helpers.

There are no accounts or passwords: a user is whoever they say they are, and
their id is derived from the email they typed. The admin is the user whose
email matches VOTELY_ADMIN_EMAIL.
"""

import re
from urllib.parse import quote

from api.schemas import UserResponse
from config import ADMIN_EMAIL, AVATAR_BASE_URL

_NON_ID_CHARS = re.compile(r"[^a-z0-9]")


def derive_user_id(email: str) -> str:
    """Lower-case the email and drop everything outside [a-z0-9]: "Jo.Doe@x.com" -> "jodoexcom"."""
    return _NON_ID_CHARS.sub("", email.lower())


def is_admin_email(email: str) -> bool:
    return email.strip().lower() == ADMIN_EMAIL


def avatar_url(name: str) -> str:
    return f"{AVATAR_BASE_URL}?seed={quote(name, safe='')}"


def build_user(name: str, email: str) -> UserResponse:
    name = name.strip()
    email = email.strip()
    return UserResponse(
        id=derive_user_id(email),
        name=name,
        email=email,
        avatar=avatar_url(name),
        is_admin=is_admin_email(email),
    )
