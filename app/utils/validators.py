import re

def clean_str(val: str | None, max_len: int = 255) -> str | None:
    """
    Collapse whitespace, trim, enforce max length. Returns None if empty after cleaning.
    """
    if val is None:
        return None
    s = re.sub(r"\s+", " ", val).strip()
    if not s:
        return None
    return s[:max_len]

def conversation_title(message: str, max_len: int = 30) -> str:
    """Title derived from the first message: first 30 characters plus an ellipsis."""
    return message[:max_len] + "..."
