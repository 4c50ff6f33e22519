import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from finsync.config import get_settings
from finsync.database import Base, engine
from finsync.app.routes import sync, cron, connections

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)

Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="FinSync API",
    description="Account and transaction synchronization across aggregator APIs and bank websites",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sync.router, prefix="/api")
app.include_router(connections.router, prefix="/api")
app.include_router(cron.router, prefix="/api")


@app.get("/api/health")
def health_check():
    return {"status": "healthy"}
