# src/dynamic_data_agent/query/identifiers.py
import re

from dynamic_data_agent.core.errors import ValidationError

# Table and column names end up inside store query builders. User tables are created at
# runtime, so names cannot be allow-listed; the structural check is the security boundary.
IDENTIFIER_PATTERN = re.compile(r"^[a-z_][a-z0-9_]*$")


def is_valid_identifier(name) -> bool:
    return isinstance(name, str) and IDENTIFIER_PATTERN.fullmatch(name) is not None


def require_identifier(name, kind: str = "identifier") -> str:
    """Returns the name unchanged or raises ValidationError naming the offending field."""
    if not is_valid_identifier(name):
        raise ValidationError(f"Invalid {kind}: {name}")
    return name
