from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .settings import Settings


def add_cors(app: FastAPI, settings: Settings):
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],  # Authorization and X-API-Key
    )
