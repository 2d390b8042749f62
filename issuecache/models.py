from datetime import datetime
from typing import List, Optional
from sqlalchemy import (
    String,
    Integer,
    Boolean,
    BigInteger,
    DateTime,
    Text,
    JSON,
    ForeignKeyConstraint,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class Issue(Base):
    """A cached open issue, addressed by (repo, number)."""
    __tablename__ = "issues"
    __table_args__ = (
        Index('idx_issues_repo_updated_at', 'repo', 'updated_at'),
        Index('idx_issues_repo_state', 'repo', 'state'),
    )

    repo: Mapped[str] = mapped_column(String(255), primary_key=True)
    number: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    body: Mapped[Optional[str]] = mapped_column(Text)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="open")
    author: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    comment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # JSON arrays of label names / assignee logins
    labels: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    assignees: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    comments: Mapped[List["Comment"]] = relationship(
        back_populates="issue",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Comment(Base):
    """A cached issue comment, addressed by (repo, id)."""
    __tablename__ = "comments"
    __table_args__ = (
        ForeignKeyConstraint(
            ['repo', 'issue_number'],
            ['issues.repo', 'issues.number'],
            ondelete="CASCADE",
            name="fk_comments_issue",
        ),
        Index('idx_comments_repo_issue', 'repo', 'issue_number'),
    )

    repo: Mapped[str] = mapped_column(String(255), primary_key=True)
    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    issue_number: Mapped[int] = mapped_column(Integer, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    author: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    issue: Mapped[Issue] = relationship(back_populates="comments")


class SyncMetadata(Base):
    """Last successful sync time per repository."""
    __tablename__ = "sync_metadata"

    repo: Mapped[str] = mapped_column(String(255), primary_key=True)
    last_sync_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class ConfiguredRepository(Base):
    """A repository the user syncs; at most one is the default."""
    __tablename__ = "repositories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    added_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
