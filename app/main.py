import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
import uvicorn

import config
import webhook
from logging_config import get_logger

logger = get_logger("main", "main.log")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # the ledger lives in the API process, which records the activities
    guardian = app.dependency_overrides.get(webhook.get_engine, webhook.get_engine)()
    done = await guardian.ledger.finalize_elapsed()
    logger.info(f"Engine started, finalized {done} elapsed driver-days")
    finalizer = asyncio.create_task(guardian.ledger.finalize_forever(config.FINALIZE_EVERY_S))

    yield

    finalizer.cancel()
    await asyncio.gather(finalizer, return_exceptions=True)
    # flush queued fixes and deliveries of the engine
    await guardian.close()
    logger.info("Engine closed on shutdown")


app = FastAPI(title="Truck-Guardian", lifespan=lifespan)
app.include_router(webhook.router)


@app.get("/health")
async def health():
    return {"ok": True}


if __name__=="__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
