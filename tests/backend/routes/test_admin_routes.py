import os
from datetime import timedelta

import pytest
from fastapi import HTTPException
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from backend.auth.dependencies import verify_cron_secret  # noqa: E402
from backend.database import Base, utcnow  # noqa: E402
from backend.models.availability import AvailabilitySlot, AvailabilityTemplate  # noqa: E402
from backend.models.booking import STATUS_EXPIRED, STATUS_PENDING, Booking  # noqa: E402
from backend.models.content import BlogPost  # noqa: E402
from backend.models.user import ROLE_ACTOR, ROLE_READER, User  # noqa: E402
from backend.routes.admin_routes import (  # noqa: E402
    SyncAvailabilityRequest,
    count_stale_pending,
    expire_stale_pending,
    sync_reader_availability,
)
from backend.routes.blog_routes import (  # noqa: E402
    CreateBlogPostRequest,
    UpdateBlogPostRequest,
    create_post,
    get_published_post,
    list_published_posts,
    update_post,
)


@pytest.fixture
def admin_db(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr('backend.routes.admin_routes.ensure_database_ready', lambda: None)
    monkeypatch.setattr('backend.routes.blog_routes.ensure_database_ready', lambda: None)

    engine = create_engine('sqlite:///:memory:')
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    tables = [
        User.__table__,
        Booking.__table__,
        AvailabilityTemplate.__table__,
        AvailabilitySlot.__table__,
        BlogPost.__table__,
    ]
    Base.metadata.create_all(bind=engine, tables=tables)

    db = testing_session_local()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine, tables=list(reversed(tables)))


def test_cron_secret_must_be_configured(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr('backend.auth.dependencies.config.CRON_SECRET', '')

    with pytest.raises(HTTPException) as exception_info:
        verify_cron_secret(authorization='Bearer anything')

    assert exception_info.value.status_code == 503


@pytest.mark.parametrize('header', [None, 'Bearer wrong', 'top-secret', 'Bearer t\xf6p-secret'])
def test_cron_secret_rejects_bad_header(monkeypatch: pytest.MonkeyPatch, header: str | None) -> None:
    monkeypatch.setattr('backend.auth.dependencies.config.CRON_SECRET', 'top-secret')

    with pytest.raises(HTTPException) as exception_info:
        verify_cron_secret(authorization=header)

    assert exception_info.value.status_code == 401


def test_cron_secret_accepts_bearer_token(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr('backend.auth.dependencies.config.CRON_SECRET', 'top-secret')

    assert verify_cron_secret(authorization='Bearer top-secret') is None


def test_sync_availability_rejects_non_reader(admin_db) -> None:
    actor = User(email='actor@example.com', role=ROLE_ACTOR)
    admin_db.add(actor)
    admin_db.commit()

    with pytest.raises(HTTPException) as exception_info:
        sync_reader_availability(SyncAvailabilityRequest(reader_id=actor.id), db=admin_db)

    assert exception_info.value.status_code == 404


def test_sync_availability_regenerates_reader_slots(admin_db) -> None:
    reader = User(email='reader@example.com', role=ROLE_READER, timezone='America/New_York')
    admin_db.add(reader)
    admin_db.commit()
    admin_db.add(AvailabilityTemplate(reader_id=reader.id, day_of_week=3, start_time='10:00', end_time='11:00'))
    admin_db.commit()

    response = sync_reader_availability(SyncAvailabilityRequest(reader_id=reader.id), db=admin_db)

    assert response.slots_created == admin_db.query(AvailabilitySlot).count()
    assert response.slots_created >= 8
    assert response.message == f'Created {response.slots_created} slots for the next 30 days'


def test_expire_pending_tools_count_then_expire(admin_db) -> None:
    actor = User(email='actor@example.com', role=ROLE_ACTOR)
    reader = User(email='reader@example.com', role=ROLE_READER)
    admin_db.add_all([actor, reader])
    admin_db.commit()
    start = utcnow() + timedelta(days=1)
    stale = Booking(
        actor_id=actor.id,
        reader_id=reader.id,
        start_time=start,
        end_time=start + timedelta(minutes=30),
        duration_minutes=30,
        total_cents=2500,
        status=STATUS_PENDING,
        created_at=utcnow() - timedelta(hours=1),
    )
    admin_db.add(stale)
    admin_db.commit()

    assert count_stale_pending(db=admin_db).count == 1
    assert expire_stale_pending(db=admin_db).count == 1
    assert stale.status == STATUS_EXPIRED
    assert count_stale_pending(db=admin_db).count == 0


def test_blog_post_request_normalizes_slug() -> None:
    request = CreateBlogPostRequest(title=' Self Tape Tips ', slug=' Self-Tape-Tips ', content='Body')

    assert request.title == 'Self Tape Tips'
    assert request.slug == 'self-tape-tips'


@pytest.mark.parametrize('slug', ['has space', 'double--hyphen', '-leading', 'emoji-✨'])
def test_blog_post_request_rejects_bad_slug(slug: str) -> None:
    with pytest.raises(ValidationError):
        CreateBlogPostRequest(title='Title', slug=slug, content='Body')


def test_drafts_stay_hidden_until_published(admin_db) -> None:
    data = CreateBlogPostRequest(title='Lighting', slug='lighting', content='Use a ring light.')
    draft = create_post(data, db=admin_db)

    assert draft.published_at is None
    assert list_published_posts(db=admin_db) == []
    with pytest.raises(HTTPException) as exception_info:
        get_published_post('lighting', db=admin_db)
    assert exception_info.value.status_code == 404

    published = update_post(draft.id, UpdateBlogPostRequest(published=True), db=admin_db)

    assert published.published_at is not None
    assert get_published_post('lighting', db=admin_db).id == draft.id
    assert [post.slug for post in list_published_posts(db=admin_db)] == ['lighting']


def test_duplicate_slug_is_rejected(admin_db) -> None:
    create_post(CreateBlogPostRequest(title='One', slug='audition-prep', content='Body'), db=admin_db)

    with pytest.raises(HTTPException) as exception_info:
        create_post(CreateBlogPostRequest(title='Two', slug='audition-prep', content='Body'), db=admin_db)

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail == 'Slug already exists.'
