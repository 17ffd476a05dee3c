"""Operator-supplied business context passed to the classifier."""

import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


def load_knowledge(path: Optional[Path], max_chars: int = 12000) -> str:
    """Read the knowledge file, truncated. Missing or unreadable -> ''."""
    if path is None:
        return ""
    try:
        text = Path(path).expanduser().read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Knowledge file %s unavailable: %s", path, e)
        return ""
    return text.strip()[:max_chars]
