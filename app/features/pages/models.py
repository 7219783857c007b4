"""
Wiki page identity.

Page content, revisions and rendering belong to the wiki feature proper; the
access-control tables only need a row to point page overrides at.
"""
from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database.base import Base, TimestampMixin, generate_ulid


class WikiPage(Base, TimestampMixin):
    __tablename__ = "wiki_pages"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    path: Mapped[str] = mapped_column(String(1000), unique=True, nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)

    def __repr__(self) -> str:
        return f"<WikiPage(id={self.id}, path={self.path!r})>"
