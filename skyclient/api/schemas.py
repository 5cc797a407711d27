"""
schemas.py — Pydantic Portal Models
=====================================
Data models for what portals send back: upload responses and the
skyfile metadata carried in the ``Skynet-File-Metadata`` header.
"""

import json
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class Subfile(BaseModel):
    """One file inside a multi-file upload, addressed by its byte range."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    filename: str
    content_type: str = Field(
        default="application/octet-stream", alias="contenttype"
    )
    offset: int = Field(default=0, ge=0)
    length: int = Field(alias="len", ge=0)

    @property
    def end(self) -> int:
        return self.offset + self.length


class SkyfileMetadata(BaseModel):
    """Metadata the portal stores alongside a skyfile."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    filename: str
    length: int = Field(ge=0)
    subfiles: Optional[Dict[str, Subfile]] = None
    default_path: Optional[str] = Field(default=None, alias="defaultpath")

    def canonical_bytes(self) -> bytes:
        """
        Serialise to the exact bytes hashed as the metadata leaf.

        Keys are sorted, separators are compact, and unset optional
        fields are dropped, so the same metadata always hashes the same
        no matter how the portal formatted it.
        """
        payload = self.model_dump(by_alias=True, exclude_none=True)
        return json.dumps(
            payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False
        ).encode("utf-8")

    @classmethod
    def from_header(cls, value: str) -> "SkyfileMetadata":
        return cls.model_validate(json.loads(value))


class UploadResponse(BaseModel):
    """Response returned by a portal after a successful upload."""

    skylink: str
    merkleroot: Optional[str] = None
    bitfield: Optional[int] = None


class Skykey(BaseModel):
    """A named encryption key held by a portal."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    skykey: str
    name: str
    id: str
    skykey_type: str = Field(alias="type")
