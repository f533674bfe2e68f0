import re

# Chain digests are 64 hex chars and are not secrets; they must stay readable
# in verification logs.
_DIGEST_LEN = 64

_EMAIL = re.compile(r"[\w.+-]+@[\w.-]+\.\w+")
_IPV4 = re.compile(r"\b(\d{1,3}\.\d{1,3}\.\d{1,3}\.)\d{1,3}\b")
_JWT = re.compile(r"eyJ[A-Za-z0-9_-]+\.eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+")
_HEX_TOKEN = re.compile(r"\b[a-fA-F0-9]{32,}\b")
_SECRET_ASSIGNMENT = re.compile(
    r'(password|passwd|pwd|secret|api_key|x-api-key)["\']?\s*[:=]\s*["\']?[^"\'&\s]+',
    flags=re.IGNORECASE,
)


def _mask_email(match: re.Match) -> str:
    local, domain = match.group().split("@", 1)
    return local[0] + "***@" + domain


def _mask_hex(match: re.Match) -> str:
    token = match.group()
    if len(token) == _DIGEST_LEN:
        return token
    return "[API_KEY_REDACTED]"


def redact_pii(message: str) -> str:
    """Redact personally identifiable information from log messages.

    Audit events carry actor emails and client IPs; those are kept verbatim
    in the chain but never written to application logs in clear.
    """
    if not isinstance(message, str):
        return str(message)

    # Emails: user@example.com -> u***@example.com
    message = _EMAIL.sub(_mask_email, message)

    # IPs (IPv4): 192.168.1.100 -> 192.168.1.***
    message = _IPV4.sub(r"\1***", message)

    message = _JWT.sub("[JWT_REDACTED]", message)
    message = _HEX_TOKEN.sub(_mask_hex, message)
    message = _SECRET_ASSIGNMENT.sub(r"\1=[REDACTED]", message)

    return message
