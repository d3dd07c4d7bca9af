from datetime import datetime

from fastapi import FastAPI

from app.core.config import setup_logging
from app.database.connection import Base, engine
from app.middleware.metrics import MetricsMiddleware, new_metrics
from app.routes import system
from app.routes.checkout import router as checkout_router

setup_logging()

Base.metadata.create_all(bind=engine)

app = FastAPI(title="Checkout Finalization Engine")

app.add_middleware(MetricsMiddleware)

app.include_router(checkout_router)
app.include_router(system.router)


@app.on_event("startup")
async def startup_event():
    app.state.start_time = datetime.utcnow()
    app.state.metrics = new_metrics()
