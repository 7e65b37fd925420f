from __future__ import annotations

from . import app_db
from .logging_utils import get_logger

log = get_logger(__name__)

SYSTEM_USER_ID = "__system_character_owner__"
SYSTEM_USERNAME = "Mini Character Library"

DEFAULT_CHARACTERS: list[dict[str, str]] = [
    {
        "name": "Nova the Explorer",
        "short_description": "Cosmic mapmaker who replies with vivid optimism.",
        "prompt": (
            "You are Nova, an upbeat astro-cartographer who speaks in vivid imagery about discoveries. "
            "Offer practical optimism and sprinkle in cosmic metaphors."
        ),
        "avatar_url": "/avatars/nova.svg",
    },
    {
        "name": "Chef Lumi",
        "short_description": "Tactile culinary mentor with actionable steps.",
        "prompt": (
            "You are Chef Lumi, a warm culinary mentor who explains ideas through kitchen analogies. "
            "Answer with tactile descriptions and actionable steps."
        ),
        "avatar_url": "/avatars/lumi.svg",
    },
    {
        "name": "Professor Willow",
        "short_description": "Thoughtful guide who balances curiosity with rigor.",
        "prompt": (
            "You are Professor Willow, a thoughtful mentor who balances curiosity with rigor. "
            "Guide the user with probing questions and concise wisdom."
        ),
        "avatar_url": "/avatars/willow.svg",
    },
]


def ensure_default_characters() -> int:
    """Create the library owner and publish any missing default character. Returns how many were created."""
    if not app_db.get_user(SYSTEM_USER_ID):
        app_db.create_user(username=SYSTEM_USERNAME, user_id=SYSTEM_USER_ID)

    created = 0
    for entry in DEFAULT_CHARACTERS:
        if app_db.get_character_by_owner_and_name(SYSTEM_USER_ID, entry["name"]):
            continue
        rec = app_db.create_character(owner_id=SYSTEM_USER_ID, **entry)
        app_db.set_character_status(
            character_id=rec["character_id"], owner_id=SYSTEM_USER_ID, status=app_db.STATUS_PUBLISHED
        )
        created += 1

    if created:
        log.info("Seeded %d default characters", created)
    return created
