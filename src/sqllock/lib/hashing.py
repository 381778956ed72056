import hashlib


def md5_text(value: str) -> str:
    """Compute MD5 hex digest of a text value (UTF-8 encoded)."""
    return hashlib.md5(value.encode("utf-8")).hexdigest()


def lock_key(resource_id: str) -> str:
    """Return the lock_key stored for a resource identifier.

    The same identifier always maps to the same 32-character key, whatever
    the identifier's length.
    """
    return md5_text(resource_id)
