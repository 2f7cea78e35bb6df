import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from therapy_backend.core import config
from therapy_backend.database import (
    Base,
    engine,
    ensure_account_schema,
    ensure_appointment_schema,
    ensure_availability_schema,
)
from therapy_backend.models import appointment, availability, user  # noqa: F401
from therapy_backend.routes import (
    admins_routes,
    appointment_routes,
    auth_routes,
    availability_routes,
    parents_routes,
    students_routes,
    therapists_routes,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)
logger = logging.getLogger(__name__)

config.validate_runtime_config()

app = FastAPI(title='Therapy Scheduling API')

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)


@app.on_event('startup')
def initialize_database() -> None:
    try:
        Base.metadata.create_all(bind=engine)
        ensure_account_schema()
        ensure_availability_schema()
        ensure_appointment_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@app.get('/')
def root():
    return {'status': 'Therapy Scheduling API Running'}


app.include_router(auth_routes.router, prefix='/auth')
app.include_router(students_routes.router, prefix='/students')
app.include_router(parents_routes.router, prefix='/parents')
app.include_router(therapists_routes.router, prefix='/therapists')
app.include_router(admins_routes.router, prefix='/admins')
app.include_router(availability_routes.router, prefix='/availability')
app.include_router(appointment_routes.router, prefix='/appointments')
