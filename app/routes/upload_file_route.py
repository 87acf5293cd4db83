from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from typing import Optional
from app.controllers.upload_controller import UploadController
from app.models.messages import SuccessfulMessage
from app.models.uploading import UploadInitRequest, UploadStatusRequest, UploadFinalizeRequest
from app.utils.exceptions import UploadError
from config.config import settings


route = APIRouter(prefix="/api", tags=["upload_router"])


def get_upload_controller(request: Request) -> UploadController:
    return request.app.state.upload_controller


@route.get("/upload/instr")
async def upload_instructions():
    return SuccessfulMessage(
        detail="Successfully request chunked upload instructions",
        payload={
            "maxFileSize": settings.MAX_FILESIZE,
            "maxChunkSize": settings.MAX_CHUNK_SIZE,
            "sessionTtl": settings.SESSION_RETENTION,
        }
    )

@route.post("/upload/init")
async def upload_init(data: UploadInitRequest, upload_controller: UploadController = Depends(get_upload_controller)):
    try:
        init_data = await upload_controller.chunked_upload_init(
            data.file_name, data.file_size, data.chunk_size, data.total_chunks, data.content_type
        )
    except UploadError as e:
        raise e.to_http()
    except Exception as e:
        raise HTTPException(
            status_code=500,
            detail=f"Error while requesting upload initialization: {e}"
        )

    return SuccessfulMessage(
        detail="upload session initialized",
        payload=init_data
    )

@route.post("/upload/chunk", status_code=202)
async def process_chunk(
    chunk: UploadFile = File(...),
    session_id: str = Form(..., alias="sessionId"),
    index: int = Form(...),
    total_chunks: Optional[int] = Form(None, alias="totalChunks"),
    upload_controller: UploadController = Depends(get_upload_controller),
):
    chunk_data = await chunk.read()

    try:
        process_res = await upload_controller.process_chunk(session_id, index, chunk_data, total_chunks)
    except UploadError as e:
        raise e.to_http()
    except Exception as e:
        raise HTTPException(
            status_code=500,
            detail=f"Error while processing chunk: {e}"
        )

    return SuccessfulMessage(
        status_code=202,
        detail=f"successfully processed chunk: {index}",
        payload=process_res
    )

@route.post("/upload/status")
async def chunking_status(data: UploadStatusRequest, upload_controller: UploadController = Depends(get_upload_controller)):
    try:
        chunking_status_res = await upload_controller.chunked_upload_status(data.session_id)
    except Exception as e:
        raise HTTPException(
            status_code=500,
            detail=f"Error while retrieving uploading status: {e}"
        )

    # not an error: clients ask before they know whether init went through
    if chunking_status_res is None:
        return SuccessfulMessage(
            detail="Upload session not found",
            payload={"sessionId": data.session_id, "existingChunks": 0}
        )

    return SuccessfulMessage(
        detail=f"Found {chunking_status_res['existingChunks']} existing chunks",
        payload=chunking_status_res
    )

@route.post("/upload/finalize")
async def finalize_upload(data: UploadFinalizeRequest, upload_controller: UploadController = Depends(get_upload_controller)):
    try:
        upload_complete_res = await upload_controller.complete_chunked_upload(data.session_id)
    except UploadError as e:
        raise e.to_http()
    except Exception as e:
        raise HTTPException(
            status_code=500,
            detail=f"Error while finalizing chunked upload: {e}"
        )

    return SuccessfulMessage(
        detail="Chunked upload finalized",
        payload=upload_complete_res
    )

@route.post("/upload/stream")
async def upload_stream(video: UploadFile = File(...), upload_controller: UploadController = Depends(get_upload_controller)):
    try:
        stored = await upload_controller.upload_stream(video)
    except UploadError as e:
        raise e.to_http()
    except Exception as e:
        raise HTTPException(
            status_code=500,
            detail=f"Streaming upload failed: {e}"
        )

    return SuccessfulMessage(
        detail="Video uploaded successfully",
        payload={"url": stored.url, "publicId": stored.public_id, "size": stored.size}
    )
