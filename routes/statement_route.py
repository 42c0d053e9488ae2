from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from fastapi.encoders import jsonable_encoder
from typing import Any, Dict

from pdf.statement_service import StatementService, UnsupportedDocumentError
from pipeline.pipeline import Pipeline
from schemas.api import StatementResponse
from settings.deps import get_pipeline

router = APIRouter(prefix="/statements", tags=["statements"])


@router.post("", response_model=StatementResponse)
async def upload_statement(
    file: UploadFile = File(...),
    pipeline: Pipeline = Depends(get_pipeline),
) -> Dict[str, Any]:
    """Accept a statement (PDF, image or plain text) and return extracted transactions."""
    filename = file.filename or "uploaded"
    content = await file.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Uploaded file is empty")

    service = StatementService(pipeline.orchestrator)
    try:
        result = await service.process_upload(content, filename=filename, content_type=file.content_type or "")
    except UnsupportedDocumentError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Failed to read document: {e}")

    return jsonable_encoder(result.to_dict())


@router.get("/metrics")
async def pipeline_metrics(pipeline: Pipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    return jsonable_encoder(pipeline.get_stats())
