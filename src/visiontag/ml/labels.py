"""Label file loading."""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def load_labels(path: str | Path) -> tuple[str, ...]:
    """Read a label file with one class name per line.

    Line order defines the class index, so blank lines are kept as empty
    labels. Only line terminators are stripped.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
    """
    with Path(path).open(encoding="utf-8") as f:
        labels = tuple(line.rstrip("\r\n") for line in f)
    logger.info("Loaded %d labels from %s", len(labels), path)
    return labels
