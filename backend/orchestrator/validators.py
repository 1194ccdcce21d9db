"""Input validation for route and instance mutations.

Everything here runs before the Domain Store is touched, so a rejected
mutation is never partially applied.
"""

from __future__ import annotations

import ipaddress
import re
from typing import TYPE_CHECKING
from urllib.parse import urlparse

if TYPE_CHECKING:
    from orchestrator.schemas.routes import HeaderConfig, RouteBase


class ValidationError(ValueError):
    """Raised when input validation fails."""
    pass


HOSTNAME_PATTERN = re.compile(r'^(\*\.)?[a-z0-9]([a-z0-9.-]*[a-z0-9])?$')
HEADER_NAME_PATTERN = re.compile(r"^[A-Za-z0-9!#$%&'*+.^_`|~-]+$")


def validate_domain(domain: str) -> str:
    """Validate a host matcher value.

    Accepts:
    - Regular hostnames (example.com, api.example.com)
    - Single-label hosts (localhost)
    - One leading wildcard label (*.example.com)
    - IPv4 / IPv6 literals

    A protocol prefix is stripped. Paths and ports are rejected because the
    host matcher only ever sees the bare host.

    Returns the normalized (lowercased) domain.
    Raises ValidationError if invalid.
    """
    if not domain or not domain.strip():
        raise ValidationError("domain is required")

    domain = domain.strip().lower()

    # Strip protocol if present
    if domain.startswith("http://"):
        domain = domain[7:]
    elif domain.startswith("https://"):
        domain = domain[8:]

    if "/" in domain:
        raise ValidationError(f"Domain cannot contain a path: {domain}")

    try:
        ipaddress.ip_address(domain.strip("[]"))
        return domain
    except ValueError:
        pass

    if len(domain) > 253:
        raise ValidationError("Domain must be 253 characters or less")

    if not HOSTNAME_PATTERN.match(domain):
        raise ValidationError(f"Invalid domain format: {domain}")

    for label in domain.split("."):
        if not label:
            raise ValidationError("Domain labels cannot be empty")
        if len(label) > 63:
            raise ValidationError("Domain labels must be 63 characters or less")
        if label.startswith("-") or label.endswith("-"):
            raise ValidationError("Domain labels cannot start or end with hyphen")

    return domain


def validate_path(path: str | None, field_name: str = "path") -> str:
    """Validate an optional request path matcher or prefix.

    Empty means "not set". Otherwise the value must start with '/' and
    contain no whitespace.
    """
    if not path:
        return ""

    path = path.strip()
    if not path:
        return ""

    if not path.startswith("/"):
        raise ValidationError(f"{field_name} must start with '/'")

    if any(ch.isspace() for ch in path):
        raise ValidationError(f"{field_name} cannot contain whitespace")

    return path


def validate_handler_type(handler_type: str | None) -> str:
    """Require a handler type.

    Unknown types are accepted: they are stored and then skipped when the
    config is built.
    """
    if not handler_type or not handler_type.strip():
        raise ValidationError("handler_type is required")
    return handler_type.strip()


def validate_header_name(name: str) -> str:
    if not name or not HEADER_NAME_PATTERN.match(name):
        raise ValidationError(f"Invalid header name: '{name}'")
    return name


def validate_header_config(headers: HeaderConfig | None) -> None:
    if headers is None:
        return
    for name in list(headers.set) + list(headers.add) + list(headers.delete):
        validate_header_name(name)


def validate_admin_url(url: str) -> str:
    """Validate and normalize an admin API base URL.

    Returns the URL without a trailing slash.
    Raises ValidationError if invalid.
    """
    if not url or not url.strip():
        raise ValidationError("Admin URL cannot be empty")

    url = url.strip()
    parsed = urlparse(url)

    if parsed.scheme not in ("http", "https"):
        raise ValidationError("Admin URL must use http or https")

    if not parsed.netloc:
        raise ValidationError("Admin URL must include a host")

    return url.rstrip("/")


def validate_instance_id(instance_id: str) -> str:
    """Instance ids are used in URLs and log lines, keep them simple."""
    if not instance_id:
        raise ValidationError("Instance id cannot be empty")

    instance_id = instance_id.strip()

    if not re.match(r'^[A-Za-z0-9][A-Za-z0-9_.-]*$', instance_id):
        raise ValidationError(
            "Instance id must be alphanumeric with optional "
            "hyphens, underscores, and dots"
        )

    if len(instance_id) > 64:
        raise ValidationError("Instance id too long")

    return instance_id


def validate_route_input(route: RouteBase) -> None:
    """Validate a route create/update payload in place.

    Normalizes domain, path and strip_prefix on the given model.
    """
    route.domain = validate_domain(route.domain)
    route.path = validate_path(route.path)
    route.strip_prefix = validate_path(route.strip_prefix, field_name="strip_prefix")
    route.handler_type = validate_handler_type(route.handler_type)
    validate_header_config(route.headers)
