"""
Sender address helpers.
"""

from __future__ import annotations

import re

_ANGLE_RE = re.compile(r"<([^>]+)>")


def normalize_address(address: str) -> str:
    """
    Lowercase an address, unwrapping ``Name <addr>`` if present.

    Examples:
        >>> normalize_address("Shop <Promo@Shop.Example>")
        'promo@shop.example'
    """
    if not address:
        return ""
    value = address.strip().lower()
    match = _ANGLE_RE.search(value)
    if match:
        value = match.group(1).strip()
    return value


def extract_domain(address: str) -> str:
    """
    Domain portion of an address, or "" when there is no ``@``.

    Examples:
        >>> extract_domain("news@mail.example.com")
        'mail.example.com'
    """
    normalized = normalize_address(address)
    if "@" not in normalized:
        return ""
    return normalized.rsplit("@", 1)[1]


def domain_and_parents(domain: str) -> list[str]:
    """
    The domain followed by each parent domain with at least two labels.

    Examples:
        >>> domain_and_parents("em.mail.shop.com")
        ['em.mail.shop.com', 'mail.shop.com', 'shop.com']
    """
    labels = [label for label in domain.lower().strip(".").split(".") if label]
    return [".".join(labels[i:]) for i in range(len(labels) - 1)]


# Bulk-send tools that stamp their name into X-Mailer
MARKETING_MAILER_NAMES = (
    "mailchimp",
    "sendgrid",
    "hubspot",
    "klaviyo",
    "brevo",
    "sendinblue",
    "mailerlite",
    "convertkit",
    "activecampaign",
    "campaign monitor",
    "campaignmonitor",
    "constant contact",
    "constantcontact",
    "mailgun",
)


def is_marketing_mailer(x_mailer: str | None) -> bool:
    """
    Whether an X-Mailer value names a known bulk-send tool.

    Examples:
        >>> is_marketing_mailer("MailChimp Mailer - **CIDabc123**")
        True
        >>> is_marketing_mailer("Microsoft Outlook 16.0")
        False
    """
    if not isinstance(x_mailer, str) or not x_mailer:
        return False
    lowered = x_mailer.lower()
    return any(name in lowered for name in MARKETING_MAILER_NAMES)
