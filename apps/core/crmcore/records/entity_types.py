from __future__ import annotations

BUILT_IN_ENTITY_TYPES = ("ACCOUNT", "CONTACT", "LEAD", "OPPORTUNITY")

_BUILT_IN_ALIASES = {
    "account": "ACCOUNT",
    "accounts": "ACCOUNT",
    "contact": "CONTACT",
    "contacts": "CONTACT",
    "lead": "LEAD",
    "leads": "LEAD",
    "opportunity": "OPPORTUNITY",
    "opportunities": "OPPORTUNITY",
}


def normalize_entity_type(value: str) -> str:
    """Return the canonical identifier for an entity type.

    Built-in types accept singular, plural and upper-case spellings and map to
    their upper-case code. Anything else is treated as a custom module slug and
    returned stripped but otherwise untouched.
    """

    stripped = value.strip()
    return _BUILT_IN_ALIASES.get(stripped.lower(), stripped)


def is_built_in(value: str) -> bool:
    return normalize_entity_type(value) in BUILT_IN_ENTITY_TYPES
