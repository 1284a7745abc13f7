from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from cinevault.apps.api.deps import get_capabilities, get_db, require_supervisor
from cinevault.apps.api.openapi import AUTHZ_ERROR_RESPONSES
from cinevault.apps.api.response import SuccessEnvelope, success_response
from cinevault.domain.models import Movie
from cinevault.services import movies as catalog
from cinevault.services.capabilities import Capabilities
from cinevault.services.notifications import dispatch_effects


router = APIRouter(prefix="/movies", tags=["movies"], responses=AUTHZ_ERROR_RESPONSES)


class MovieCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    genre: str = Field(min_length=1, max_length=64)
    release_year: int = Field(ge=1870, le=2100)
    rating: float = Field(ge=0, le=10)
    director: str = Field(min_length=1, max_length=255)
    duration_minutes: int = Field(gt=0)
    main_lead: str = Field(min_length=1, max_length=255)
    streaming_platform: str = Field(min_length=1, max_length=64)
    description: str = Field(min_length=1)
    premium: bool = False


class MovieUpdateRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    genre: str | None = Field(default=None, min_length=1, max_length=64)
    release_year: int | None = Field(default=None, ge=1870, le=2100)
    rating: float | None = Field(default=None, ge=0, le=10)
    director: str | None = Field(default=None, min_length=1, max_length=255)
    duration_minutes: int | None = Field(default=None, gt=0)
    main_lead: str | None = Field(default=None, min_length=1, max_length=255)
    streaming_platform: str | None = Field(default=None, min_length=1, max_length=64)
    description: str | None = Field(default=None, min_length=1)
    premium: bool | None = None


class MovieResponse(BaseModel):
    id: str
    title: str
    genre: str
    release_year: int
    rating: float
    director: str
    duration_minutes: int
    main_lead: str
    streaming_platform: str
    description: str
    premium: bool
    created_at: datetime | None
    updated_at: datetime | None


class MovieListResponse(BaseModel):
    items: list[MovieResponse]
    current_page: int
    total_pages: int
    total: int


def movie_payload(movie: Movie) -> MovieResponse:
    return MovieResponse(
        id=movie.id,
        title=movie.title,
        genre=movie.genre,
        release_year=movie.release_year,
        rating=movie.rating,
        director=movie.director,
        duration_minutes=movie.duration_minutes,
        main_lead=movie.main_lead,
        streaming_platform=movie.streaming_platform,
        description=movie.description,
        premium=movie.premium,
        created_at=movie.created_at,
        updated_at=movie.updated_at,
    )


@router.get("", response_model=SuccessEnvelope[MovieListResponse])
async def list_movies(
    request: Request,
    title: str | None = Query(default=None, max_length=255),
    genre: str | None = Query(default=None, max_length=64),
    release_year: int | None = Query(default=None),
    min_rating: float | None = Query(default=None, ge=0, le=10),
    premium: bool | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    capabilities: Capabilities = Depends(get_capabilities),
    db: AsyncSession = Depends(get_db),
) -> dict:
    filters = catalog.MovieFilters(
        title=title,
        genre=genre,
        release_year=release_year,
        min_rating=min_rating,
        premium=premium,
    )
    result = await catalog.list_movies(db, filters, page, include_premium=capabilities.can_access_premium)
    data = MovieListResponse(
        items=[movie_payload(movie) for movie in result.movies],
        current_page=result.page,
        total_pages=result.total_pages,
        total=result.total,
    )
    return success_response(request=request, data=data)


@router.get("/{movie_id}", response_model=SuccessEnvelope[MovieResponse])
async def get_movie(
    request: Request,
    movie_id: str,
    capabilities: Capabilities = Depends(get_capabilities),
    db: AsyncSession = Depends(get_db),
) -> dict:
    movie = await catalog.get_movie(db, movie_id, include_premium=capabilities.can_access_premium)
    return success_response(request=request, data=movie_payload(movie))


@router.post("", status_code=201, response_model=SuccessEnvelope[MovieResponse])
async def create_movie(
    request: Request,
    payload: MovieCreateRequest,
    background_tasks: BackgroundTasks,
    _supervisor: Capabilities = Depends(require_supervisor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    movie, effects = await catalog.create_movie(db, payload.model_dump())
    background_tasks.add_task(dispatch_effects, effects)
    return success_response(request=request, data=movie_payload(movie))


@router.patch("/{movie_id}", response_model=SuccessEnvelope[MovieResponse])
async def update_movie(
    request: Request,
    movie_id: str,
    payload: MovieUpdateRequest,
    _supervisor: Capabilities = Depends(require_supervisor),
    db: AsyncSession = Depends(get_db),
) -> dict:
    movie = await catalog.update_movie(db, movie_id, payload.model_dump(exclude_unset=True))
    return success_response(request=request, data=movie_payload(movie))


@router.delete("/{movie_id}", status_code=204)
async def delete_movie(
    movie_id: str,
    _supervisor: Capabilities = Depends(require_supervisor),
    db: AsyncSession = Depends(get_db),
) -> Response:
    await catalog.delete_movie(db, movie_id)
    return Response(status_code=204)
