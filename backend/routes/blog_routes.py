import re
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import require_admin
from backend.database import get_db, utcnow
from backend.models.content import BlogPost
from backend.routes.common import database_unavailable, ensure_database_ready

router = APIRouter(tags=['blog'])
admin_router = APIRouter(tags=['admin'], dependencies=[Depends(require_admin)])

SLUG_PATTERN = re.compile(r'^[a-z0-9]+(?:-[a-z0-9]+)*$')
MAX_TITLE_LENGTH = 200
MAX_EXCERPT_LENGTH = 500


def _validate_slug(value: str) -> str:
    normalized = value.strip().lower()
    if not SLUG_PATTERN.match(normalized):
        raise ValueError('Slug may only contain lowercase letters, numbers and single hyphens.')
    return normalized


def _validate_title(value: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValueError('Title is required.')
    if len(normalized) > MAX_TITLE_LENGTH:
        raise ValueError(f'Title must be {MAX_TITLE_LENGTH} characters or fewer.')
    return normalized


class CreateBlogPostRequest(BaseModel):
    title: str
    slug: str
    content: str
    excerpt: str | None = None
    published: bool = False

    @field_validator('title')
    @classmethod
    def validate_title(cls, value: str) -> str:
        return _validate_title(value)

    @field_validator('slug')
    @classmethod
    def validate_slug(cls, value: str) -> str:
        return _validate_slug(value)

    @field_validator('content')
    @classmethod
    def validate_content(cls, value: str) -> str:
        if not value.strip():
            raise ValueError('Content is required.')
        return value

    @field_validator('excerpt')
    @classmethod
    def validate_excerpt(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        if len(value.strip()) > MAX_EXCERPT_LENGTH:
            raise ValueError(f'Excerpt must be {MAX_EXCERPT_LENGTH} characters or fewer.')
        return value.strip()


class UpdateBlogPostRequest(BaseModel):
    title: str | None = None
    slug: str | None = None
    content: str | None = None
    excerpt: str | None = None
    published: bool | None = None

    @field_validator('title')
    @classmethod
    def validate_title(cls, value: str | None) -> str | None:
        return None if value is None else _validate_title(value)

    @field_validator('slug')
    @classmethod
    def validate_slug(cls, value: str | None) -> str | None:
        return None if value is None else _validate_slug(value)


class BlogPostResponse(BaseModel):
    id: int
    slug: str
    title: str
    excerpt: str | None = None
    content: str
    published: bool
    published_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


def _slug_taken(db: Session, slug: str, exclude_id: int | None = None) -> bool:
    query = db.query(BlogPost).filter(BlogPost.slug == slug)
    if exclude_id is not None:
        query = query.filter(BlogPost.id != exclude_id)
    return query.first() is not None


@router.get('', response_model=list[BlogPostResponse])
def list_published_posts(db: Session = Depends(get_db)):
    try:
        return db.query(BlogPost).filter(
            BlogPost.published.is_(True),
        ).order_by(BlogPost.published_at.desc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@router.get('/{slug}', response_model=BlogPostResponse)
def get_published_post(slug: str, db: Session = Depends(get_db)):
    try:
        post = db.query(BlogPost).filter(
            BlogPost.slug == slug.strip().lower(),
            BlogPost.published.is_(True),
        ).first()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc

    if post is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Post not found.')
    return post


@admin_router.get('', response_model=list[BlogPostResponse])
def list_all_posts(db: Session = Depends(get_db)):
    try:
        return db.query(BlogPost).order_by(BlogPost.created_at.desc()).all()
    except SQLAlchemyError as exc:
        raise database_unavailable() from exc


@admin_router.post('', response_model=BlogPostResponse, status_code=status.HTTP_201_CREATED)
def create_post(data: CreateBlogPostRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        if _slug_taken(db, data.slug):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail='Slug already exists.')

        post = BlogPost(
            title=data.title,
            slug=data.slug,
            excerpt=data.excerpt,
            content=data.content,
            published=data.published,
            published_at=utcnow() if data.published else None,
        )
        db.add(post)
        db.commit()
        db.refresh(post)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return post


@admin_router.put('/{post_id}', response_model=BlogPostResponse)
def update_post(post_id: int, data: UpdateBlogPostRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        post = db.get(BlogPost, post_id)
        if post is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Post not found.')
        if data.slug and _slug_taken(db, data.slug, exclude_id=post.id):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail='Slug already exists.')

        changes = data.model_dump(exclude_none=True)
        if changes.get('published') and not post.published:
            post.published_at = utcnow()
        for field, value in changes.items():
            setattr(post, field, value)
        db.commit()
        db.refresh(post)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    return post


@admin_router.delete('/{post_id}', status_code=status.HTTP_204_NO_CONTENT)
def delete_post(post_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        post = db.get(BlogPost, post_id)
        if post is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Post not found.')
        db.delete(post)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
