"""Content extraction — type detection, per-type extractors, entity detection."""
