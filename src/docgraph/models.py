"""
Core dataclasses shared by the crawl engine, the extractor and the graph store.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class CrawlTask:
    """Unit of work processing exactly one URL."""

    url: str
    attempt: int = 0

    def __post_init__(self) -> None:
        if self.attempt < 0:
            raise ValueError("attempt must be >= 0")


@dataclass(slots=True, frozen=True)
class ContentBlock:
    """One structural block of a page, tagged by its element kind.

    Table blocks carry raw markup, image blocks carry the image source and its
    alt text, every other block carries visible text.
    """

    type: str
    content: str
    alt: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type, "content": self.content}
        if self.type == "img":
            data["alt"] = self.alt
        return data


@dataclass(slots=True, frozen=True)
class PageMetadata:
    last_modified: Optional[str] = None
    author: Optional[str] = None


@dataclass(slots=True, frozen=True)
class PageContent:
    """Structured document extracted from a page."""

    title: str
    blocks: List[ContentBlock] = field(default_factory=list)
    metadata: PageMetadata = field(default_factory=PageMetadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "content": [block.to_dict() for block in self.blocks],
            "metadata": asdict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PageContent:
        return cls(
            title=data.get("title", ""),
            blocks=[
                ContentBlock(type=item["type"], content=item["content"], alt=item.get("alt"))
                for item in data.get("content", [])
            ],
            metadata=PageMetadata(**data.get("metadata", {})),
        )


@dataclass(slots=True, frozen=True)
class FetchResult:
    """What a single successful fetch yields: the page content and its outgoing links."""

    content: PageContent
    links: List[str]
    final_url: Optional[str] = None
