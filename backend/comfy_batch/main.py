from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from comfy_batch.api.endpoints import images
from comfy_batch.core.config import settings
from comfy_batch.core.logging_config import setup_logging
from comfy_batch.db.init_db import init_db
from comfy_batch.services.queue_driver import driver


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL)
    init_db()
    # Startup counts as a trigger: pending jobs from a previous run get picked up
    driver.start()
    try:
        yield
    finally:
        driver.stop(timeout=settings.SUBMIT_TIMEOUT + settings.POLL_INTERVAL * 2)


app = FastAPI(title=settings.PROJECT_NAME, version=settings.APP_VERSION, lifespan=lifespan)

# CORS
if settings.BACKEND_CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin).rstrip("/") for origin in settings.BACKEND_CORS_ORIGINS],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(images.router, prefix="/api/images", tags=["images"])

# Relocated images, e.g. /generated_images/<projectId>/image_01.png
app.mount(
    "/generated_images",
    StaticFiles(directory=str(settings.GENERATED_IMAGES_DIR), check_dir=False),
    name="generated_images",
)


@app.get("/")
def root():
    return {"message": f"Welcome to {settings.PROJECT_NAME} API"}
