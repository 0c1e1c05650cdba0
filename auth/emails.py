"""
auth/emails.py -- Email address normalization, validation and redaction.

Every email that crosses a service boundary goes through normalize_email()
first. Identity is the trimmed, lowercased address; the roster, challenges,
invites and rate-limit keys all depend on that single canonical form.

redact_email() is the only form in which addresses appear in log output.
"""

from __future__ import annotations

import re

from email_validator import EmailNotValidError, validate_email

MAX_EMAIL_LENGTH = 320

_LIST_SPLIT_RE = re.compile(r"[\s,;]+")


def normalize_email(value: str | None) -> str:
    if not value:
        return ""
    return value.strip().lower()


def is_valid_email(value: str | None) -> bool:
    """Syntax check on the normalized form via email-validator.

    No DNS lookups. Quoted local parts, IP-literal domains and non-ASCII
    local parts are refused: these addresses are rendered into mail headers
    and HTML.
    """
    email = normalize_email(value)
    if not email or len(email) > MAX_EMAIL_LENGTH:
        return False
    try:
        validate_email(
            email,
            check_deliverability=False,
            allow_smtputf8=False,
            allow_quoted_local=False,
            allow_domain_literal=False,
        )
    except EmailNotValidError:
        return False
    return True


def redact_email(value: str | None) -> str | None:
    """Return 'a***@example.com' for 'alice@example.com'."""
    if not value:
        return None
    local, sep, domain = value.partition("@")
    if not sep or not domain:
        return value[:1] + "***"
    return f"{local[:1]}***@{domain}"


def parse_email_list(raw: str | list[str] | None) -> list[str]:
    """Split comma, semicolon or whitespace separated input into unique normalized emails.

    Order of first appearance is preserved. Validation is left to the caller
    so invalid entries can be reported back.
    """
    if raw is None:
        return []
    chunks = raw if isinstance(raw, list) else [raw]
    seen: set[str] = set()
    result: list[str] = []
    for chunk in chunks:
        for part in _LIST_SPLIT_RE.split(str(chunk)):
            email = normalize_email(part)
            if email and email not in seen:
                seen.add(email)
                result.append(email)
    return result
