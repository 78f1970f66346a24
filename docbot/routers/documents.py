from typing import List, Literal, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile

from ..deps import Services, get_services
from ..schemas import Credentials, FileInfo, IngestionJob, IngestionStage, UploadAccepted
from ..services import repository
from ..services.extract import ExtractionError, extract_text
from ..services.jobs import run_ingestion_job

router = APIRouter(tags=["documents"])
logger = structlog.get_logger(__name__)

@router.post("/documents/upload", response_model=UploadAccepted, status_code=202)
async def upload_document(
    background: BackgroundTasks,
    file: UploadFile = File(...),
    phone_number: str = Form(""),
    auth_token: str = Form(""),
    origin: str = Form(""),
    intent: Optional[str] = Form(None),
    processing_mode: Literal["ocr", "transcribe"] = Form("ocr"),
    dev_mode: bool = Form(False),
    services: Services = Depends(get_services),
):
    if not phone_number:
        raise HTTPException(400, "Phone number is required")
    credentials = Credentials.from_parts(auth_token, origin)
    if credentials is None:
        raise HTTPException(400, "11za auth_token and origin are required")

    content_bytes = await file.read()
    try:
        file_type, text = await extract_text(content_bytes, file.content_type, services.recognizer, processing_mode)
    except ExtractionError as e:
        logger.warning("extraction_failed", phone_number=phone_number, file_name=file.filename, error=str(e))
        raise HTTPException(400, str(e))

    job = services.jobs.create(phone_number, file.filename or "document", file_type)
    job.stage = IngestionStage.EXTRACTED
    if dev_mode:
        job.extracted_text = text

    # Embedding groups are paced a minute apart; the request returns right away
    background.add_task(run_ingestion_job, services.jobs, services.ingestion, job.job_id, text, credentials, intent)
    return UploadAccepted(
        job_id=job.job_id,
        file_type=file_type,
        phone_number=phone_number,
        stage=job.stage,
        extracted_text=text if dev_mode else None,
        processing_mode=processing_mode if dev_mode else None,
    )

@router.get("/documents/jobs/{job_id}", response_model=IngestionJob)
async def get_job(job_id: str, services: Services = Depends(get_services)):
    job = services.jobs.get(job_id)
    if job is None:
        raise HTTPException(404, "Job not found")
    return job

@router.get("/documents", response_model=List[FileInfo])
async def list_documents(services: Services = Depends(get_services)):
    async with services.session_factory() as session:
        docs = await repository.list_documents(session)
        counts = await repository.chunk_counts(session)
    return [
        FileInfo(id=d.id, name=d.name, file_type=d.file_type, chunk_count=counts.get(d.id, 0), created_at=d.created_at)
        for d in docs
    ]

@router.delete("/documents/{document_id}")
async def delete_document(document_id: UUID, services: Services = Depends(get_services)):
    async with services.session_factory() as session:
        async with session.begin():
            deleted = await repository.delete_document(session, document_id)
    if not deleted:
        raise HTTPException(404, "Document not found")
    logger.info("document_deleted", document_id=str(document_id))
    return {"success": True}
