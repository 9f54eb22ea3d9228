import logging
import random
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from model import DailyClick, Link, url_digest

logger = logging.getLogger(__name__)

CODE_ALPHABET = "abcdefghijkmnopqrstuvwxyzABCDEFGHJKLMNOPQRSTUVWXYZ0123456789"
CODE_LENGTH = 6
MAX_COLLISION_RETRIES = 5  # insert attempts before shorten gives up

_rng = random.SystemRandom()


class LinkNotFound(Exception):
    def __init__(self, code: str):
        super().__init__(f"Short URL '{code}' not found")
        self.code = code


class StoreError(Exception):
    pass


def generate_code(size: int = CODE_LENGTH) -> str:
    """Draws a random code from CODE_ALPHABET. Uniqueness is left to the store."""
    return "".join(_rng.choice(CODE_ALPHABET) for _ in range(size))


def get_link(db: Session, code: str) -> Link:
    link = db.query(Link).filter(Link.code == code).first()
    if link is None:
        raise LinkNotFound(code)
    return link


def record_attempt(db: Session, url: str):
    """Bump attempt_count of the link for url in one statement.

    Returns the existing code, or None when the url was never shortened.
    """
    stmt = (
        update(Link)
        .where(Link.url_hash == url_digest(url), Link.url == url)
        .values(attempt_count=Link.attempt_count + 1)
        .returning(Link.code)
        .execution_options(synchronize_session=False)
    )
    code = db.execute(stmt).scalar_one_or_none()
    db.commit()
    return code


def shorten_url(db: Session, url: str) -> str:
    """
    Returns the code for url, creating the link on first use.

    A unique violation on insert means either another request stored the same
    url first or the generated code collided; both are resolved by starting
    over, which picks up the other request's link or draws a fresh code.
    """
    for attempt in range(MAX_COLLISION_RETRIES):
        existing_code = record_attempt(db, url)
        if existing_code is not None:
            return existing_code

        code = generate_code()
        new_link = Link(
            code=code,
            url=url,
            url_hash=url_digest(url),
            created_at=datetime.now(timezone.utc),
            attempt_count=1,
            click_count=0,
        )
        try:
            db.add(new_link)
            db.commit()
            logger.info("Created link %s for %s", code, url)
            return code
        except IntegrityError:
            db.rollback()
            logger.warning("Unique violation inserting %s (attempt %d), retrying", code, attempt + 1)

    raise StoreError(f"Could not store a link for {url} after {MAX_COLLISION_RETRIES} attempts")


def _upsert_insert(db: Session):
    if db.get_bind().dialect.name == "sqlite":
        return sqlite.insert
    return postgresql.insert


def increment_click_count(db: Session, link_id: int) -> None:
    db.execute(
        update(Link)
        .where(Link.id == link_id)
        .values(click_count=Link.click_count + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def record_daily_click(db: Session, link_id: int, day=None) -> None:
    day = day or datetime.now(timezone.utc).date()
    insert = _upsert_insert(db)
    stmt = insert(DailyClick).values(link_id=link_id, date=day, clicks=1)
    stmt = stmt.on_conflict_do_update(
        index_elements=["link_id", "date"],
        set_={"clicks": DailyClick.clicks + 1},
    )
    db.execute(stmt)
    db.commit()


def resolve_link(db: Session, code: str) -> str:
    """
    Looks up code and counts the click.

    Counter updates are best-effort: a failure is logged and rolled back, and
    the target url is returned regardless.
    """
    link = get_link(db, code)
    link_id, url = link.id, link.url

    try:
        increment_click_count(db, link_id)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Error updating click count for %s", code)

    try:
        record_daily_click(db, link_id)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Error inserting/updating daily clicks for %s", code)

    return url
