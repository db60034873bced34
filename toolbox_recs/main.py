# toolbox_recs/main.py
from fastapi import FastAPI

from .logging_setup import setup_logging, get_logger
from .middleware import RequestContextMiddleware
from .exception_handling import register_exception_handlers
from .lifespan import lifespan

from .routers import admin, experiments, feedback, health, profiles, recommendations

setup_logging()  # <-- set up logging ASAP
logger = get_logger("toolbox_recs.main")

app = FastAPI(title="Toolbox Recommendations", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)

register_exception_handlers(app)

app.include_router(health.router)
app.include_router(feedback.router)
app.include_router(recommendations.router)
app.include_router(profiles.router)
app.include_router(experiments.router)
app.include_router(admin.router)
