from __future__ import annotations

from dataclasses import dataclass
import logging
import math
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cinevault.core.config import get_settings
from cinevault.core.errors import NotFoundError, PremiumRequiredError, ValidationError
from cinevault.domain.models import Movie, User
from cinevault.services.notifications.effects import Effect, new_movie


logger = logging.getLogger(__name__)

MOVIE_FIELDS = (
    "title",
    "genre",
    "release_year",
    "rating",
    "director",
    "duration_minutes",
    "main_lead",
    "streaming_platform",
    "description",
    "premium",
)
_REQUIRED_FIELDS = tuple(name for name in MOVIE_FIELDS if name != "premium")


@dataclass(frozen=True)
class MovieFilters:
    title: str | None = None
    genre: str | None = None
    release_year: int | None = None
    min_rating: float | None = None
    premium: bool | None = None


@dataclass(frozen=True)
class MoviePage:
    movies: list[Movie]
    page: int
    total_pages: int
    total: int


def _validate(values: dict[str, Any]) -> None:
    rating = values.get("rating")
    if rating is not None and not 0 <= float(rating) <= 10:
        raise ValidationError("rating must be between 0 and 10")
    duration = values.get("duration_minutes")
    if duration is not None and int(duration) <= 0:
        raise ValidationError("duration_minutes must be positive")
    for name in ("title", "genre", "director", "main_lead", "streaming_platform", "description"):
        if name in values and not str(values[name] or "").strip():
            raise ValidationError(f"{name} must not be blank")


async def list_movies(
    session: AsyncSession,
    filters: MovieFilters,
    page: int = 1,
    *,
    include_premium: bool,
) -> MoviePage:
    """Filtered, paginated catalog listing.

    Without premium entitlement, premium titles are excluded regardless of
    the ``premium`` filter.
    """
    page_size = get_settings().movies_page_size
    page = max(1, page)
    stmt = select(Movie)
    if filters.title:
        stmt = stmt.where(func.lower(Movie.title).contains(filters.title.strip().lower(), autoescape=True))
    if filters.genre:
        stmt = stmt.where(Movie.genre == filters.genre)
    if filters.release_year is not None:
        stmt = stmt.where(Movie.release_year == filters.release_year)
    if filters.min_rating is not None:
        stmt = stmt.where(Movie.rating >= filters.min_rating)
    if filters.premium is not None:
        stmt = stmt.where(Movie.premium == filters.premium)
    if not include_premium:
        stmt = stmt.where(Movie.premium.is_(False))

    total = (await session.execute(select(func.count()).select_from(stmt.subquery()))).scalar_one()
    result = await session.execute(
        stmt.order_by(Movie.created_at.desc(), Movie.id).offset((page - 1) * page_size).limit(page_size)
    )
    return MoviePage(
        movies=list(result.scalars().all()),
        page=page,
        total_pages=math.ceil(total / page_size) if total else 0,
        total=total,
    )


async def get_movie(session: AsyncSession, movie_id: str, *, include_premium: bool) -> Movie:
    movie = await session.get(Movie, movie_id)
    if movie is None:
        raise NotFoundError("Movie not found")
    if movie.premium and not include_premium:
        raise PremiumRequiredError()
    return movie


async def create_movie(session: AsyncSession, values: dict[str, Any]) -> tuple[Movie, list[Effect]]:
    # Every identity with a push endpoint hears about new titles.
    missing = [name for name in _REQUIRED_FIELDS if values.get(name) is None]
    if missing:
        raise ValidationError(f"Missing fields: {', '.join(missing)}")
    _validate(values)
    fields = {name: values[name] for name in MOVIE_FIELDS if values.get(name) is not None}
    fields.setdefault("premium", False)
    movie = Movie(id=uuid4().hex, **fields)
    session.add(movie)
    await session.commit()
    result = await session.execute(select(User.id).where(User.push_token.is_not(None)))
    effects = [
        new_movie(identity_id, movie.id, movie.title, movie.streaming_platform)
        for identity_id in result.scalars().all()
    ]
    logger.info("movie_created movie_id=%s premium=%s", movie.id, movie.premium)
    return movie, effects


async def update_movie(session: AsyncSession, movie_id: str, values: dict[str, Any]) -> Movie:
    movie = await session.get(Movie, movie_id)
    if movie is None:
        raise NotFoundError("Movie not found")
    changes = {name: value for name, value in values.items() if name in MOVIE_FIELDS and value is not None}
    _validate(changes)
    for name, value in changes.items():
        setattr(movie, name, value)
    await session.commit()
    logger.info("movie_updated movie_id=%s fields=%s", movie.id, ",".join(sorted(changes)))
    return movie


async def delete_movie(session: AsyncSession, movie_id: str) -> None:
    movie = await session.get(Movie, movie_id)
    if movie is None:
        raise NotFoundError("Movie not found")
    await session.delete(movie)
    await session.commit()
    logger.info("movie_deleted movie_id=%s", movie_id)
