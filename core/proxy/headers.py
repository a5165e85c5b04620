# core/proxy/headers.py
"""Header constants shared by the forwarder and the outbound client"""

from multidict import CIMultiDict

# Provider-negotiation headers that always replace client-supplied values
DEFAULT_OVERRIDE_HEADERS = (
    ('Accept', 'text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8'),
    ('Accept-Language', 'zh-CN,zh;q=0.9'),
    ('Connection', 'keep-alive'),
    ('Cookie', 'zhwikiVariant=zh-cn'),
)

# Re-framed by the client library, never copied from the caller
REQUEST_FRAMING_HEADERS = frozenset({'host', 'transfer-encoding'})

# Dropped when a redirect leaves the original host and its subdomains
SENSITIVE_REDIRECT_HEADERS = frozenset({'authorization', 'www-authenticate'})


def copy_headers(source, skip=frozenset()) -> CIMultiDict:
    """Copies every (name, value) pair, keeping multi-value order per name.

    ``skip`` holds lower-case header names.
    """
    headers = CIMultiDict()
    for name, value in source.items():
        if name.lower() in skip:
            continue
        headers.add(name, value)
    return headers


def apply_overrides(headers: CIMultiDict, overrides) -> CIMultiDict:
    """Replaces every same-named header with the override value"""
    for name, value in overrides:
        headers[name] = value
    return headers


def has_token(headers, name: str, token: str) -> bool:
    """True when a comma-separated header (e.g. Connection) lists ``token``"""
    for value in headers.getall(name, ()):
        for item in value.split(','):
            if item.strip().lower() == token:
                return True
    return False
