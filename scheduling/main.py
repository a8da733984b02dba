import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from scheduling.core import config
from scheduling.core.log_config import setup_logging
from scheduling.database import Base, engine, ensure_schema
from scheduling.models import appointment, availability  # noqa: F401
from scheduling.routes import scheduling_routes

setup_logging()
config.validate_runtime_config()

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

logger = logging.getLogger(__name__)


@app.on_event('startup')
def initialize_database() -> None:
    try:
        Base.metadata.create_all(bind=engine)
        ensure_schema()
    except SQLAlchemyError:
        logger.exception('Database initialization failed. Check DATABASE_URL and database credentials.')


@app.on_event('shutdown')
def stop_notification_workers() -> None:
    scheduling_routes.notification_executor.shutdown(wait=False)


@app.get('/')
def root():
    return {'status': 'Scheduling API Running', 'environment': config.APP_ENV}


app.include_router(scheduling_routes.router, prefix='/scheduling')
