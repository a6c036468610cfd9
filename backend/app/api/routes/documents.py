import logging
import uuid
from typing import Any

from fastapi import APIRouter, File, Form, HTTPException, UploadFile

from app import crud
from app.api.deps import AgencyUser, ContextDep, CurrentUser, SessionDep
from app.core.config import settings
from app.models import (
    Document,
    DocumentDownloadUrl,
    DocumentNotesUpdate,
    DocumentPublic,
    DocumentsPublic,
    User,
)
from app.services.exceptions import ServiceError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/documents", tags=["documents"])


def get_owned_document(
    *, session: SessionDep, current_user: CurrentUser, document_id: uuid.UUID
) -> Document:
    document = session.get(Document, document_id)
    if not document:
        raise HTTPException(status_code=404, detail="Document not found")
    if not current_user.is_agency and document.user_id != current_user.id:
        raise HTTPException(status_code=403, detail="Not enough permissions")
    return document


def resolve_owner_id(
    *, session: SessionDep, current_user: CurrentUser, user_id: uuid.UUID | None
) -> uuid.UUID:
    """Customers act on their own documents; agency staff may name a customer."""
    if user_id is None or user_id == current_user.id:
        return current_user.id
    if not current_user.is_agency:
        raise HTTPException(status_code=403, detail="Not enough permissions")
    if not session.get(User, user_id):
        raise HTTPException(status_code=404, detail="User not found")
    return user_id


@router.post("/", response_model=DocumentPublic)
def upload_document(
    *,
    session: SessionDep,
    current_user: CurrentUser,
    context: ContextDep,
    file: UploadFile = File(...),
    user_id: uuid.UUID | None = Form(default=None),
) -> Any:
    """
    Store an identity or legal document image and attach its automated analysis.

    Nothing is saved to the database unless both the upload and the analysis succeed.
    """
    owner_id = resolve_owner_id(
        session=session, current_user=current_user, user_id=user_id
    )
    intake = context.intake
    try:
        intake.validate(file.content_type, file.size)
        content = file.file.read()
        file_path = intake.store(owner_id, content, file.content_type or "")
        analysis = context.analyzer.analyze(content, file.content_type or "")
    except ServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)

    document = crud.create_document(
        session=session, user_id=owner_id, file_path=file_path, analysis=analysis
    )
    logger.info(
        "Document %s (%s) stored for user %s",
        document.id,
        document.document_type,
        owner_id,
    )
    return document


@router.get("/", response_model=DocumentsPublic)
def read_documents(
    session: SessionDep,
    current_user: CurrentUser,
    user_id: uuid.UUID | None = None,
    skip: int = 0,
    limit: int = 100,
) -> Any:
    owner_id = resolve_owner_id(
        session=session, current_user=current_user, user_id=user_id
    )
    return crud.get_documents(session=session, user_id=owner_id, skip=skip, limit=limit)


@router.get("/{document_id}", response_model=DocumentPublic)
def read_document(
    session: SessionDep, current_user: CurrentUser, document_id: uuid.UUID
) -> Any:
    return get_owned_document(
        session=session, current_user=current_user, document_id=document_id
    )


@router.get("/{document_id}/download-url", response_model=DocumentDownloadUrl)
def read_document_download_url(
    session: SessionDep,
    current_user: CurrentUser,
    context: ContextDep,
    document_id: uuid.UUID,
) -> Any:
    """
    Time-limited link to the stored file.
    """
    document = get_owned_document(
        session=session, current_user=current_user, document_id=document_id
    )
    expires_in = settings.SIGNED_URL_EXPIRE_SECONDS
    return DocumentDownloadUrl(
        url=context.storage.create_signed_url(document.file_path, expires_in),
        expires_in=expires_in,
    )


@router.post("/{document_id}/notes", response_model=DocumentPublic)
def update_document_notes(
    *,
    session: SessionDep,
    current_user: AgencyUser,
    document_id: uuid.UUID,
    notes_in: DocumentNotesUpdate,
) -> Any:
    document = session.get(Document, document_id)
    if not document:
        raise HTTPException(status_code=404, detail="Document not found")
    return crud.set_document_notes(
        session=session, document=document, notes=notes_in.notes
    )
