import hashlib
from datetime import datetime, timezone

from sqlalchemy import Column, Date, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from database import Base


def url_digest(url: str) -> str:
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


def _url_hash_default(context):
    return url_digest(context.get_current_parameters()["url"])


class Link(Base):
    __tablename__ = "links"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    code = Column(String(10), unique=True, nullable=False, index=True)
    url = Column(Text, nullable=False)
    # fixed-size stand-in for url in the unique index; urls can outgrow a btree row
    url_hash = Column(String(64), unique=True, nullable=False, default=_url_hash_default)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    attempt_count = Column(Integer, nullable=False, default=1)
    click_count = Column(Integer, nullable=False, default=0)

    daily_clicks = relationship("DailyClick", back_populates="link")

    def __repr__(self):
        return f"<Link(code='{self.code}', url='{self.url}')>"


class DailyClick(Base):
    __tablename__ = "clicks"

    # (link_id, date) is the conflict target of the per-day upsert
    link_id = Column(Integer, ForeignKey("links.id"), primary_key=True)
    date = Column(Date, primary_key=True)
    clicks = Column(Integer, nullable=False, default=1)

    link = relationship("Link", back_populates="daily_clicks")

    def __repr__(self):
        return f"<DailyClick(link_id={self.link_id}, date={self.date}, clicks={self.clicks})>"
