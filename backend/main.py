import logging

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from backend.core import config
from backend.database import Base, engine, ensure_booking_schema, ensure_user_schema
from backend.models import availability, booking, calendar, content, user  # noqa: F401
from backend.routes import (
    admin_routes,
    auth_routes,
    availability_routes,
    blog_routes,
    booking_routes,
    calendar_routes,
    cron_routes,
    payment_routes,
    reader_routes,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)

app = FastAPI(title='Self Tape Reader API')

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_database() -> None:
    config.validate_runtime_config()
    try:
        Base.metadata.create_all(bind=engine)
        ensure_user_schema()
        ensure_booking_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and Postgres credentials.')


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={'ok': False, 'error': exc.detail},
        headers=getattr(exc, 'headers', None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get('msg', 'Invalid request.') if errors else 'Invalid request.'
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={'ok': False, 'error': message, 'details': jsonable_encoder(errors)},
    )


@app.get('/')
def root():
    return {'status': 'Self Tape Reader API Running'}


app.include_router(auth_routes.router, prefix='/auth')
app.include_router(availability_routes.router, prefix='/availability')
app.include_router(availability_routes.schedule_router, prefix='/schedule')
app.include_router(booking_routes.router, prefix='/bookings')
app.include_router(reader_routes.router, prefix='/readers')
app.include_router(payment_routes.router, prefix='/payments')
app.include_router(payment_routes.webhook_router, prefix='/webhooks')
app.include_router(calendar_routes.router, prefix='/calendar')
app.include_router(cron_routes.router, prefix='/cron')
app.include_router(admin_routes.router, prefix='/admin')
app.include_router(blog_routes.admin_router, prefix='/admin/blog')
app.include_router(blog_routes.router, prefix='/blog')
