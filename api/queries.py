"""
Video listing query specification.

A VideoFilter holds the optional listing filters and turns them into a list of
SQLAlchemy predicates that are ANDed together at execution time. A field that is
absent contributes no predicate at all (it is not a wildcard match).

Tag filtering is not part of the SQL predicate list. The base query runs first,
then the join table is read for the returned ids and the rows are narrowed in
memory by filter_by_tags: a video is kept when it carries at least one of the
requested tags.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Mapping, Optional, Sequence

import sqlalchemy as sa
from sqlalchemy.sql.expression import ColumnElement

from api.database import video_tags, videos
from api.enums import VideoStatus


def _escape_like(term: str) -> str:
    """Escape LIKE wildcards so a search for "50%" matches the literal text."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass(frozen=True)
class VideoFilter:
    """Optional filters for listing videos."""

    status: Optional[VideoStatus] = None
    category_id: Optional[int] = None
    search: Optional[str] = None
    tag_ids: Sequence[int] = field(default_factory=tuple)

    @classmethod
    def public(
        cls,
        category_id: Optional[int] = None,
        search: Optional[str] = None,
        tag_ids: Optional[Iterable[int]] = None,
    ) -> "VideoFilter":
        """Filter for anonymous callers: status is always pinned to published."""
        return cls(
            status=VideoStatus.PUBLISHED,
            category_id=category_id,
            search=search,
            tag_ids=tuple(tag_ids or ()),
        )

    @property
    def search_term(self) -> Optional[str]:
        if self.search is None:
            return None
        term = self.search.strip()
        return term or None

    @property
    def has_tag_filter(self) -> bool:
        return len(self.tag_ids) > 0

    def predicates(self) -> List[ColumnElement]:
        """Build the WHERE clauses for every filter field that is set."""
        clauses = []
        if self.status is not None:
            clauses.append(videos.c.status == VideoStatus(self.status).value)
        if self.category_id is not None:
            clauses.append(videos.c.category_id == self.category_id)
        term = self.search_term
        if term is not None:
            pattern = f"%{_escape_like(term)}%"
            clauses.append(
                sa.or_(
                    videos.c.title.ilike(pattern, escape="\\"),
                    videos.c.description.ilike(pattern, escape="\\"),
                )
            )
        return clauses

    def apply(self, query: sa.Select) -> sa.Select:
        clauses = self.predicates()
        if clauses:
            query = query.where(sa.and_(*clauses))
        return query

    def tag_rows_query(self, video_ids: Sequence[int]) -> sa.Select:
        """Join rows linking the given videos to any of the requested tags."""
        return (
            sa.select(video_tags.c.video_id, video_tags.c.tag_id)
            .where(video_tags.c.video_id.in_(list(video_ids)))
            .where(video_tags.c.tag_id.in_(list(self.tag_ids)))
        )


def filter_by_tags(rows: Sequence[Mapping], tag_rows: Iterable[Mapping]) -> List[Mapping]:
    """
    Keep the rows whose id appears in tag_rows.

    Order of rows is preserved, so a created_at ordering from the base query
    survives the filter.
    """
    matched = {tag_row["video_id"] for tag_row in tag_rows}
    return [row for row in rows if row["id"] in matched]
