# backend/queryhub/api/routes_uploads.py

from typing import Optional

from fastapi import APIRouter, Depends, File, UploadFile, Form, HTTPException, Response
from sqlalchemy.orm import Session

from ..core.db import get_db
from ..core.errors import (
    DuplicateTableError,
    IngestionError,
    IngestionFailure,
    InvalidIdentifier,
    QueryHubError,
)
from ..models.upload import Upload
from ..services.ingestion_service import (
    create_upload,
    delete_upload,
    get_upload,
    list_uploads,
    update_upload,
)


router = APIRouter(prefix="/uploads", tags=["uploads"])


def _http_error(e: QueryHubError) -> HTTPException:
    if isinstance(e, DuplicateTableError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, InvalidIdentifier):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, IngestionError) and e.reason == IngestionFailure.NOT_TABULAR:
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=422, detail=str(e))


def _find_upload(db: Session, upload_id: int) -> Upload:
    upload = get_upload(db, upload_id)
    if upload is None:
        raise HTTPException(status_code=404, detail="Upload not found")
    return upload


# ------------------------------------------------------
# LIST UPLOADS
# ------------------------------------------------------
@router.get("", response_model=dict)
def list_uploads_route(db: Session = Depends(get_db)):
    uploads = list_uploads(db)
    return {"uploads": [u.to_dict() for u in uploads], "count": len(uploads)}


# ------------------------------------------------------
# UPLOAD CSV AS NEW TABLE
# ------------------------------------------------------
@router.post("", response_model=dict, status_code=201)
def create_upload_route(
    table: str = Form(...),
    file: Optional[UploadFile] = File(None),
    description: Optional[str] = Form(None),
    creator_id: Optional[int] = Form(None),
    db: Session = Depends(get_db),
):
    if file is None:
        raise HTTPException(status_code=400, detail="File can't be blank")

    try:
        upload = create_upload(
            db,
            table=table,
            contents=file.file.read(),
            content_type=file.content_type,
            description=description,
            creator_id=creator_id,
        )
    except QueryHubError as e:
        raise _http_error(e)

    return upload.to_dict()


# ------------------------------------------------------
# GET UPLOAD
# ------------------------------------------------------
@router.get("/{upload_id}", response_model=dict)
def get_upload_route(upload_id: int, db: Session = Depends(get_db)):
    return _find_upload(db, upload_id).to_dict()


# ------------------------------------------------------
# RE-UPLOAD AND/OR RENAME
# ------------------------------------------------------
@router.patch("/{upload_id}", response_model=dict)
def update_upload_route(
    upload_id: int,
    table: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    description: Optional[str] = Form(None),
    db: Session = Depends(get_db),
):
    upload = _find_upload(db, upload_id)

    try:
        upload = update_upload(
            db,
            upload,
            table=table,
            contents=file.file.read() if file is not None else None,
            content_type=file.content_type if file is not None else None,
            description=description,
        )
    except QueryHubError as e:
        raise _http_error(e)

    return upload.to_dict()


# ------------------------------------------------------
# DELETE UPLOAD (drops the table too)
# ------------------------------------------------------
@router.delete("/{upload_id}", status_code=204)
def delete_upload_route(upload_id: int, db: Session = Depends(get_db)):
    upload = _find_upload(db, upload_id)

    try:
        delete_upload(db, upload)
    except QueryHubError as e:
        raise _http_error(e)

    return Response(status_code=204)
