import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from answer_service.api.routes import router as api_router
from answer_service.core.settings import SETTINGS

DEFAULT_CORS_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:13001",
]


def configure_logging(level: str) -> None:
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level)
        return
    logging.basicConfig(
        level=level,
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


configure_logging(SETTINGS.log_level)

app = FastAPI(title="answer-service")
app.add_middleware(
    CORSMiddleware,
    allow_origins=SETTINGS.cors_origins or DEFAULT_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["x-trace-id", "x-request-id"],
)
app.include_router(api_router)
