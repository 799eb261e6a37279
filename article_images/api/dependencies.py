from functools import lru_cache

from article_images.core.config import get_settings
from article_images.pipeline.orchestrator import ImageAcquisitionPipeline, build_pipeline


@lru_cache
def get_pipeline() -> ImageAcquisitionPipeline:
    return build_pipeline(get_settings())
