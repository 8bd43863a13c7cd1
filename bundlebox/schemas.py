from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from bundlebox.errors import ValidationError


class ArchiveOptions(BaseModel):
    password: Optional[str] = Field(default=None, max_length=256)
    # None means unlimited
    max_downloads: Optional[int] = Field(default=None, ge=1)
    # None means the archive never expires
    expires_in_hours: Optional[int] = Field(default=None, ge=1)

    def check_limits(self, settings) -> "ArchiveOptions":
        if self.max_downloads is not None and self.max_downloads > settings.max_downloads_limit:
            raise ValidationError(f"max_downloads must be at most {settings.max_downloads_limit}")
        if self.expires_in_hours is not None and self.expires_in_hours > settings.max_expiry_hours:
            raise ValidationError(f"expires_in_hours must be at most {settings.max_expiry_hours}")
        return self


class SubfileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    path: str
    size_bytes: int
    mime_type: str
    file_token: str
    extracted: bool
    downloaded_at: Optional[datetime] = None


class CreateArchiveResponse(BaseModel):
    archive_id: int
    download_token: str
    edit_token: str
    subfiles: list[SubfileOut]


class ArchiveSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    size_bytes: int
    mime_type: str
    created_at: datetime
    expiry_at: Optional[datetime] = None
    max_downloads: Optional[int] = None
    download_count: int
    downloads_remaining: Optional[int] = None


class ArchiveInfoResponse(ArchiveSummary):
    is_password_protected: bool
    files: Optional[list[SubfileOut]] = None


class ManageListing(BaseModel):
    archive: ArchiveSummary
    download_token: str
    files: list[SubfileOut]
    tree: list[dict]


class EditTokenRequest(BaseModel):
    edit_token: str = Field(min_length=1)


class PartialDownloadRequest(BaseModel):
    paths: list[str] = Field(min_length=1)
    password: Optional[str] = None


class UpdateResponse(BaseModel):
    success: bool = True
    archive_id: int
    subfiles: list[SubfileOut]
