import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, HTTPException, Request, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import config
from database import getdb, engine, Base
from service import LinkNotFound, StoreError, get_link, resolve_link, shorten_url

logger = logging.getLogger(__name__)


class StatusResponse(BaseModel):
    status: str


class URLItem(BaseModel):
    url: str = Field(min_length=1)


class ShortenResponse(BaseModel):
    short_url: str


class URLResponse(BaseModel):
    url: str


class LinkStats(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    url: str
    created_at: datetime
    attempt_count: int
    click_count: int


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.setup_logging()
    # an unreachable database aborts startup here
    Base.metadata.create_all(bind=engine)
    logger.info("Server started on http://localhost:%d", config.PORT)
    yield


app = FastAPI(title="URL Shortener", lifespan=lifespan)


@app.exception_handler(RequestValidationError)
async def invalid_body_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": "Invalid request body"})


def internal_error() -> HTTPException:
    return HTTPException(status_code=500, detail="Internal Server Error")


@app.get("/", response_model=StatusResponse)
def read_root():
    return StatusResponse(status="OK")


@app.post("/shorten", response_model=ShortenResponse)
def shorten(item: URLItem, db: Session = Depends(getdb)):
    try:
        code = shorten_url(db, item.url)
    except (SQLAlchemyError, StoreError):
        db.rollback()
        logger.exception("Error shortening %s", item.url)
        raise internal_error()
    return ShortenResponse(short_url=code)


@app.get("/stats/{code}", response_model=LinkStats)
def get_stats(code: str, db: Session = Depends(getdb)):
    """
    Get statistics for a shortened URL
    """
    try:
        link = get_link(db, code)
    except LinkNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SQLAlchemyError:
        logger.exception("Error querying stats for %s", code)
        raise internal_error()
    return LinkStats.model_validate(link)


@app.get("/get-link/{code}", response_model=URLResponse)
@app.get("/link/{code}", response_model=URLResponse)
def get_url(code: str, db: Session = Depends(getdb)):
    """
    Resolve a short code to its target and count the click
    """
    try:
        url = resolve_link(db, code)
    except LinkNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SQLAlchemyError:
        logger.exception("Error resolving %s", code)
        raise internal_error()
    return URLResponse(url=url)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=config.HOST, port=config.PORT)
