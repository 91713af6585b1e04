from __future__ import annotations

from pathlib import PurePosixPath
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from .manager import RAGManager


def wiki_link(source_path: str) -> str:
    return f"[[{PurePosixPath(source_path).stem}]]"


class BacklinkGenerator:
    """Suggests ``[[note]]`` links to the indexed notes most similar to a passage."""

    def __init__(self, manager: "RAGManager", min_similarity: Optional[float] = None) -> None:
        self.manager = manager
        self.min_similarity = min_similarity

    async def generate(self, text: str, k: int = 5, exclude: Optional[str] = None) -> List[str]:
        if not text.strip() or len(self.manager.store) == 0:
            return []
        threshold = self.min_similarity
        if threshold is None:
            threshold = self.manager.config.min_similarity

        # Over-fetch: several hits usually come from the same note.
        results = await self.manager.search(text, k * 4)
        links: List[str] = []
        for result in results:
            if result.score < threshold or result.source_path == exclude:
                continue
            link = wiki_link(result.source_path)
            if link not in links:
                links.append(link)
            if len(links) == k:
                break
        return links


__all__ = ["BacklinkGenerator", "wiki_link"]
