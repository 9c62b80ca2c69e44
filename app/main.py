import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
import uvicorn

from webhook import router
from database import init_models
from config import RUN_ALERT_WORKER
from worker import worker
from logging_config import get_logger

logger = get_logger("main", "main.log")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_models()

    # alert tick shares the request event loop with the departure handler
    stop_event = asyncio.Event()
    task = asyncio.create_task(worker(stop_event)) if RUN_ALERT_WORKER else None
    try:
        yield
    finally:
        if task:
            stop_event.set()
            await task
            logger.info("Alert worker shut down")


app = FastAPI(title="Detention-Guardian", lifespan=lifespan)
app.include_router(router)

if __name__=="__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
