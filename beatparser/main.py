"""FastAPI application - serves the beat parsing API."""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from beatparser.analysis.selector import available_strategies
from beatparser.api.upload import router as upload_router


app = FastAPI(title="Beatparser", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(upload_router, prefix="/api")


@app.get("/api/health")
async def health():
    return {"status": "ok"}


@app.get("/api/strategies")
async def strategies():
    return available_strategies()


def run():
    logging.basicConfig(level=logging.INFO, format="%(name)s %(levelname)s: %(message)s")
    import uvicorn
    from beatparser.config import settings
    uvicorn.run(
        "beatparser.main:app",
        host=settings.host,
        port=settings.port,
    )


if __name__ == "__main__":
    run()
