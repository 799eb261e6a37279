from fastapi import APIRouter, Depends, HTTPException, status

from article_images.api.dependencies import get_pipeline
from article_images.api.security import require_api_key
from article_images.pipeline.models import FeedHints
from article_images.pipeline.orchestrator import ImageAcquisitionPipeline
from article_images.schemas.images import AcquireImageRequest, AcquireImageResponse, PipelineStatsOut
from article_images.services.dedup_store import DedupStoreError

router = APIRouter(dependencies=[Depends(require_api_key)])


@router.post("/acquire", response_model=AcquireImageResponse)
async def acquire_image(
    payload: AcquireImageRequest,
    pipeline: ImageAcquisitionPipeline = Depends(get_pipeline),
) -> AcquireImageResponse:
    hints = FeedHints.from_mapping(payload.feed_hints.model_dump()) if payload.feed_hints else None
    try:
        result = await pipeline.acquire_image(str(payload.article_url), hints)
    except DedupStoreError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return AcquireImageResponse(**result.to_dict())


@router.get("/stats", response_model=PipelineStatsOut)
async def pipeline_stats(pipeline: ImageAcquisitionPipeline = Depends(get_pipeline)) -> PipelineStatsOut:
    try:
        dedup_records = await pipeline.store.count()
    except DedupStoreError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return PipelineStatsOut(**pipeline.stats(), dedup_records=dedup_records)
