from __future__ import annotations

import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)


class DocumentationResolver:
    """Look up ``<tag>.md`` in the knowledge base directory."""

    def __init__(self, root: str, files):
        self.root = os.path.expanduser(root)
        self.files = files

    def resolve(self, tag: str) -> Optional[str]:
        tag = (tag or "").strip().lower()
        if not tag or "/" in tag or os.sep in tag or tag in (".", ".."):
            logger.error("DocConsistency: unusable tag [%s]", tag)
            return None
        expected = f"{tag}.md"
        path = os.path.join(self.root, expected)

        # The literal directory entry must match, so a case-insensitive
        # filesystem can't hand back "LS.md" for tag "ls".
        try:
            names = os.listdir(self.root)
        except OSError as e:
            logger.error("DocConsistency: cannot list %s: %s", self.root, e)
            return None
        if expected not in names:
            near = [n for n in names if n.lower() == expected]
            if near:
                logger.error("DocConsistency: mismatch: tag [%s] vs file name [%s]", tag, near[0])
            else:
                logger.error("DocConsistency: file not found: %s", path)
            return None

        text = self.files.read(path)
        if not text:
            logger.error("DocConsistency: empty documentation for [%s] at %s", tag, path)
            return None
        return text
