"""ID generation, timestamps and user colour assignment."""

import hashlib
import uuid
from datetime import datetime, timezone
from typing import Optional, Sequence


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def generate_id() -> str:
    """Generate a random unique identifier for datasets and rows."""
    return str(uuid.uuid4())


def dataset_name_from_filename(filename: str) -> str:
    """Derive a dataset name from an uploaded file name."""
    name = filename.strip()
    if name.lower().endswith(".csv"):
        name = name[:-4]
    return name or "untitled"


def pick_user_color(user_id: str, palette: Sequence[str], fallback: Optional[str] = None) -> str:
    """Pick a stable palette colour for a user id."""
    if not palette:
        return fallback or "#9CA3AF"
    digest = hashlib.md5(user_id.encode()).hexdigest()
    return palette[int(digest, 16) % len(palette)]
