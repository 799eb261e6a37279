from fastapi import APIRouter

from article_images.api.routes import health, images

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(images.router, prefix="/images", tags=["images"])
