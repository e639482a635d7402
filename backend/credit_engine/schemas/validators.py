import re

_CODE_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+(\.[A-Za-z0-9_\-]+)*$")
MAX_METADATA_DEPTH = 3
MAX_METADATA_STRING_LENGTH = 1000


def validate_code(value: str) -> str:
    """Dotted operation/module/application code, e.g. ``crm.leads.create``."""
    value = value.strip()
    if not _CODE_PATTERN.match(value):
        raise ValueError("code must be dot-separated segments of letters, digits, '_' or '-'")
    return value


def validate_metadata(value, depth=0):
    """Recursively validate free-form metadata stored on ledger rows."""
    if depth > MAX_METADATA_DEPTH:
        raise ValueError("Metadata nesting too deep (max 3 levels)")

    if isinstance(value, str):
        if len(value) > MAX_METADATA_STRING_LENGTH:
            raise ValueError(f"Metadata string too long (max {MAX_METADATA_STRING_LENGTH} chars)")
    elif isinstance(value, dict):
        for k, v in value.items():
            if not isinstance(k, str):
                raise ValueError("Metadata keys must be strings")
            validate_metadata(v, depth + 1)
    elif isinstance(value, list):
        for item in value:
            validate_metadata(item, depth + 1)
    elif not isinstance(value, (int, float, bool, type(None))):
        raise ValueError(f"Unsupported metadata type: {type(value).__name__}")
