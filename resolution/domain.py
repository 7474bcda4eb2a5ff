"""Email parsing helpers: domain extraction, strict validation, name splitting."""
import re
from typing import Optional

PERSONAL_EMAIL_DOMAINS = frozenset({
    "gmail.com",
    "yahoo.com",
    "hotmail.com",
    "outlook.com",
    "icloud.com",
    "me.com",
    "aol.com",
    "live.com",
})

# local@domain.tld, no whitespace; the domain is whatever follows the last "@".
_BASIC_EMAIL = re.compile(r"^\S+@[^@\s]+\.[^@\s]+$")
_STRICT_EMAIL = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")


def extract_domain(raw_email: Optional[str]) -> Optional[str]:
    """Return the lowercase organisational domain of an email, or None.

    None for blank or malformed input and for consumer webmail domains,
    which say nothing about the company.

    >>> extract_domain("jane@Acme.IO")
    'acme.io'
    >>> extract_domain("jane@gmail.com") is None
    True
    """
    if raw_email is None:
        return None
    email = raw_email.strip()
    if not email or not _BASIC_EMAIL.match(email):
        return None
    domain = email.rsplit("@", 1)[1].strip().lower()
    if not domain or domain in PERSONAL_EMAIL_DOMAINS:
        return None
    return domain


def is_valid_email(raw_email: Optional[str]) -> bool:
    return bool(raw_email and _STRICT_EMAIL.match(raw_email.strip()))


def normalize_email(raw_email: str) -> str:
    return raw_email.strip().lower()


def company_name_from_domain(domain: str) -> str:
    """'acme.io' -> 'Acme'. Used when a deal has a domain but no company text."""
    label = domain.strip().lower().split(".")[0]
    return label[:1].upper() + label[1:]


def split_display_name(display_name: Optional[str], email: str) -> tuple[str, str]:
    """Split on the first space; first name falls back to the email local-part."""
    name = (display_name or "").strip()
    if not name:
        return email.split("@", 1)[0], ""
    first, _, last = name.partition(" ")
    return first, last.strip()
