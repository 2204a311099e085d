import hashlib
import re
import uuid

USERNAME_PATTERN = re.compile(r"[A-Za-z0-9_-]{3,20}")
PASSWORD_MIN_LENGTH = 6


def validate_credentials(username: str, password: str) -> bool:
    """Check the login form shape; nothing is verified against a store."""

    return bool(
        username
        and USERNAME_PATTERN.fullmatch(username)
        and password
        and len(password) >= PASSWORD_MIN_LENGTH
    )


def derive_tenant_key(username: str, password: str) -> str:
    """Map a username/password pair to a stable UUID-shaped tenant key.

    The same credentials always reopen the same folder, so no account
    database is needed. Version and variant bits are set so the result
    parses as an RFC 4122 version 4 UUID.
    """

    digest = hashlib.sha256(
        f"{username.lower()}:{password}".encode("utf-8")
    ).hexdigest()
    variant = (int(digest[16:18], 16) & 0x3F) | 0x80
    return "-".join(
        [
            digest[0:8],
            digest[8:12],
            "4" + digest[13:16],
            f"{variant:02x}" + digest[18:20],
            digest[20:32],
        ]
    )


def random_tenant_key() -> str:
    return str(uuid.uuid4())


def issue_tenant_key(username: str, password: str, scheme: str = "derived") -> str:
    if scheme == "random":
        return random_tenant_key()
    return derive_tenant_key(username, password)
