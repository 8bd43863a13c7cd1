from io import BytesIO
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Header, Request, Response, UploadFile
from fastapi.responses import StreamingResponse
from pydantic import ValidationError as SchemaError
from sqlalchemy.orm import Session

from bundlebox.database import get_db
from bundlebox.dependencies import client_ip, get_assembler, get_gateway
from bundlebox.errors import ValidationError
from bundlebox.schemas import (
    ArchiveInfoResponse,
    ArchiveOptions,
    ArchiveSummary,
    CreateArchiveResponse,
    EditTokenRequest,
    ManageListing,
    PartialDownloadRequest,
    SubfileOut,
    UpdateResponse,
)
from bundlebox.services.assembler import ArchiveAssembler, Upload
from bundlebox.services.edit_authorization import authorize_edit
from bundlebox.services.file_tree import NodeStatus, build_tree, tree_to_dict
from bundlebox.services.gateway import AccessGateway, DownloadedArchive

router = APIRouter(prefix="/files", tags=["archives"])


async def read_uploads(files: list[UploadFile], relative_paths: list[str]) -> list[Upload]:
    if relative_paths and len(relative_paths) != len(files):
        raise ValidationError("Relative paths missing or count mismatch")
    uploads = []
    for i, file in enumerate(files):
        path = relative_paths[i] if relative_paths else (file.filename or "")
        uploads.append(Upload(path=path, content=await file.read(), mime_type=file.content_type))
    return uploads


def attachment(result: DownloadedArchive) -> StreamingResponse:
    return StreamingResponse(
        BytesIO(result.content),
        media_type=result.media_type,
        headers={"Content-Disposition": f'attachment; filename="{result.filename}"'},
    )


def subfile_list(archive) -> list[SubfileOut]:
    return [SubfileOut.model_validate(s) for s in archive.subfiles]


@router.post("/upload", response_model=CreateArchiveResponse)
async def upload_archive(
    request: Request,
    files: list[UploadFile] = File(...),
    relative_paths: list[str] = Form(default=[]),
    password: Optional[str] = Form(default=None),
    max_downloads: Optional[int] = Form(default=None),
    expires_in_hours: Optional[int] = Form(default=None),
    assembler: ArchiveAssembler = Depends(get_assembler),
):
    settings = request.app.state.settings
    try:
        options = ArchiveOptions(
            password=password or None,
            max_downloads=max_downloads if max_downloads is not None else settings.default_max_downloads,
            expires_in_hours=expires_in_hours if expires_in_hours is not None else settings.default_expiry_hours,
        ).check_limits(settings)
    except SchemaError as exc:
        raise ValidationError(exc.errors()[0]["msg"]) from exc

    uploads = await read_uploads(files, relative_paths)
    created = assembler.create(uploads, options, uploaded_by=client_ip(request))
    return CreateArchiveResponse(
        archive_id=created.archive.id,
        download_token=created.archive.download_token,
        edit_token=created.edit_token,
        subfiles=subfile_list(created.archive),
    )


@router.get("/metadata/{token}", response_model=ArchiveInfoResponse)
def archive_metadata(
    token: str,
    password: Optional[str] = None,
    gateway: AccessGateway = Depends(get_gateway),
):
    info = gateway.info(token, password)
    summary = ArchiveSummary.model_validate(info.archive)
    return ArchiveInfoResponse(
        **summary.model_dump(),
        is_password_protected=bool(info.archive.password_hash),
        files=subfile_list(info.archive) if info.unlocked else None,
    )


@router.head("/download/{token}")
def check_download(
    token: str,
    password: Optional[str] = None,
    gateway: AccessGateway = Depends(get_gateway),
):
    gateway.check_access(token, password)
    return Response(status_code=200)


@router.get("/download/{token}")
def download_archive(
    token: str,
    password: Optional[str] = None,
    gateway: AccessGateway = Depends(get_gateway),
):
    return attachment(gateway.download(token, password))


@router.post("/download/{token}")
def download_selected(
    token: str,
    body: PartialDownloadRequest,
    gateway: AccessGateway = Depends(get_gateway),
):
    return attachment(gateway.download_members(token, body.paths, body.password))


@router.post("/manage/{archive_id}/verify")
def verify_edit_token(
    archive_id: int,
    body: EditTokenRequest,
    db: Session = Depends(get_db),
):
    authorize_edit(db, archive_id, body.edit_token)
    return {"valid": True}


@router.get("/manage/{archive_id}", response_model=ManageListing)
def manage_listing(
    archive_id: int,
    x_edit_token: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
):
    rec = authorize_edit(db, archive_id, x_edit_token)
    tree = build_tree(rec.subfiles, NodeStatus.EXISTING)
    return ManageListing(
        archive=ArchiveSummary.model_validate(rec),
        download_token=rec.download_token,
        files=subfile_list(rec),
        tree=tree_to_dict(tree, lambda s: {"size_bytes": s.size_bytes, "mime_type": s.mime_type}),
    )


@router.post("/manage/{archive_id}", response_model=UpdateResponse)
async def update_archive(
    request: Request,
    archive_id: int,
    edit_token: str = Form(...),
    files: Optional[list[UploadFile]] = File(default=None),
    relative_paths: list[str] = Form(default=[]),
    file_tokens_to_delete: list[str] = Form(default=[]),
    assembler: ArchiveAssembler = Depends(get_assembler),
):
    uploads = await read_uploads(files or [], relative_paths)
    rec = assembler.update(
        archive_id,
        edit_token,
        uploads=uploads,
        file_tokens_to_delete=file_tokens_to_delete,
        uploaded_by=client_ip(request),
    )
    return UpdateResponse(archive_id=rec.id, subfiles=subfile_list(rec))


@router.delete("/manage/{archive_id}")
def delete_archive(
    archive_id: int,
    x_edit_token: Optional[str] = Header(default=None),
    assembler: ArchiveAssembler = Depends(get_assembler),
):
    assembler.delete(archive_id, x_edit_token)
    return {"success": True}
