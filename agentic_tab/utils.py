"""
Utility functions for Agentic Tab.

Provides helpers for text processing, domains, selectors and risk keywords.
"""

import re


def truncate_text(text: str, max_chars: int, suffix: str = "...") -> str:
    """Truncate text to a maximum number of characters.

    Args:
        text: Text to truncate
        max_chars: Maximum number of characters
        suffix: Suffix to add when truncated

    Returns:
        Truncated text
    """
    if len(text) <= max_chars:
        return text
    return text[:max_chars - len(suffix)] + suffix


def clean_text(text: str) -> str:
    """Collapse whitespace runs and strip the ends."""
    return re.sub(r'\s+', ' ', text).strip()


def format_selector(selector: str) -> str:
    """Normalize a selector for Playwright.

    Plain visible text (no CSS punctuation) becomes a ``text=`` selector.
    """
    selector = selector.strip()

    # Already a Playwright selector format
    if selector.startswith(('text=', 'css=', 'xpath=', 'id=', '//')):
        return selector

    if not any(c in selector for c in '.#[]:>+~=*'):
        # Single bare words are valid tag selectors
        if ' ' not in selector and selector.isalpha() and selector.islower():
            return selector
        return f'text="{selector}"'

    return selector


def is_password_field(selector: str) -> bool:
    """Check if a selector likely refers to a password field.

    Args:
        selector: The selector to check

    Returns:
        True if likely a password field
    """
    password_patterns = [
        r'password',
        r'type=["\']?password',
        r'#pass',
        r'\.pass',
        r'passwd',
        r'pwd',
    ]
    selector_lower = selector.lower()
    return any(re.search(p, selector_lower) for p in password_patterns)


def parse_domain(url: str) -> str:
    """Extract the domain from a URL.

    Args:
        url: Full URL

    Returns:
        Domain name (e.g., "example.com")
    """
    # Remove protocol
    domain = re.sub(r'^[a-z][a-z0-9+.-]*://', '', url.strip(), flags=re.IGNORECASE)
    # Remove path, query and fragment
    domain = re.split(r'[/?#]', domain)[0]
    # Remove credentials and port
    domain = domain.rsplit('@', 1)[-1].split(':')[0]
    return domain.lower()


def normalize_domain(url_or_domain: str) -> str:
    """Normalize a URL or host to the key used for domain memories.

    Lowercases, strips scheme, port, path and a leading ``www.``.
    """
    domain = parse_domain(url_or_domain)
    if domain.startswith("www."):
        domain = domain[4:]
    return domain


PAYMENT_DOMAINS = {
    "paypal.com",
    "stripe.com",
    "checkout.stripe.com",
    "pay.google.com",
    "checkout.shopify.com",
    "secure.checkout",
    "payment.",
    "pay.",
    "checkout.",
}


def is_payment_domain(url: str) -> bool:
    """Check if a URL is likely a payment page.

    Args:
        url: URL to check

    Returns:
        True if likely a payment domain or checkout path
    """
    domain = parse_domain(url)
    url_lower = url.lower()

    for payment_domain in PAYMENT_DOMAINS:
        if payment_domain in domain:
            return True

    payment_paths = ['/checkout', '/payment', '/pay/', '/cart/checkout', '/order/']
    return any(p in url_lower for p in payment_paths)


HIGH_RISK_KEYWORDS = {
    "buy", "purchase", "checkout", "pay", "order", "subscribe",
    "delete", "remove", "cancel subscription", "close account",
    "send", "post", "submit", "confirm payment", "place order",
    "unsubscribe", "terminate", "deactivate",
}


def contains_high_risk_keywords(text: str) -> bool:
    """Check if text contains high-risk keywords as whole words."""
    text_lower = text.lower()
    return any(re.search(rf'\b{re.escape(kw)}\b', text_lower) for kw in HIGH_RISK_KEYWORDS)


MEDIUM_RISK_KEYWORDS = {
    "login", "sign in", "log in", "password",
    "upload", "attach", "file", "permission",
    "allow", "grant access", "authorize",
}


def contains_medium_risk_keywords(text: str) -> bool:
    """Check if text contains medium-risk keywords as whole words."""
    text_lower = text.lower()
    return any(re.search(rf'\b{re.escape(kw)}\b', text_lower) for kw in MEDIUM_RISK_KEYWORDS)
