def is_valid_object_id(s: str | None) -> bool:
    """Check if string is a valid 24-char hex ObjectId (chat ids are ObjectIds)."""
    return s is not None and len(s) == 24 and all(c in "0123456789abcdef" for c in s.lower())
