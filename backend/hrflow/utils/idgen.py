"""ID Generation Utilities"""
import re
import secrets
import string
import uuid
from datetime import datetime, timezone
from typing import Optional

_SLUG_ALPHABET = string.ascii_lowercase + string.digits
_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


def generate_id(prefix: Optional[str] = None) -> str:
    """
    Generate a unique ID with optional prefix

    Args:
        prefix: Optional prefix for the ID (e.g., 'WFD', 'WFI', 'WSI')

    Returns:
        Unique ID string

    Examples:
        >>> generate_id('WFI')
        'WFI-a1b2c3d4e5f6'
    """
    unique_part = uuid.uuid4().hex[:12]

    if prefix:
        return f"{prefix}-{unique_part}"
    return unique_part


def generate_definition_id() -> str:
    """Generate workflow definition ID"""
    return generate_id("WFD")


def generate_instance_id() -> str:
    """Generate workflow instance ID"""
    return generate_id("WFI")


def generate_step_instance_id() -> str:
    """Generate step instance ID"""
    return generate_id("WSI")


def generate_audit_event_id() -> str:
    """Generate audit event ID"""
    return generate_id("AUD")


def random_token(length: int, alphabet: str = _SLUG_ALPHABET) -> str:
    """Random string drawn from alphabet"""
    return "".join(secrets.choice(alphabet) for _ in range(length))


def generate_reference_number() -> str:
    """Human-facing instance reference, e.g. WF-7K2QX9AB"""
    return f"WF-{random_token(8, _REFERENCE_ALPHABET)}"


def slugify(name: str) -> str:
    """Lowercase the name and collapse whitespace runs into dashes"""
    return re.sub(r"\s+", "-", name.strip().lower())


def generate_slug(name: str) -> str:
    """Slug derived from name plus a 6-char random suffix"""
    return f"{slugify(name)}-{random_token(6)}"


def generate_correlation_id() -> str:
    """
    Generate a correlation ID for request tracing

    Returns:
        Correlation ID string with timestamp prefix
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    unique_part = uuid.uuid4().hex[:8]
    return f"COR-{timestamp}-{unique_part}"
