import os

import uvicorn
from fastapi import FastAPI

from fitter.api.insights import router as insights_router
from fitter.api.jobs import router as jobs_router
from fitter.api.suggestions import router as suggestions_router
from fitter.db.session import create_tables

app = FastAPI(title="Fitter Pipeline")


@app.on_event("startup")
def on_startup() -> None:
    create_tables()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(jobs_router)
app.include_router(suggestions_router)
app.include_router(insights_router)


def serve() -> None:
    uvicorn.run(
        "fitter.main:app",
        host=os.getenv("API_HOST", "127.0.0.1"),
        port=int(os.getenv("API_PORT", "8000")),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )
