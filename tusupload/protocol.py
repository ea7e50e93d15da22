"""
tus 1.0.0 request builder.

Turns a TusUpload plus an intent (create, patch a chunk, query the offset)
into a request descriptor. Nothing here touches the network or the upload.
"""

import base64
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional
from urllib.parse import urljoin

from tusupload.exceptions import ProtocolContractError
from tusupload.models.tus_upload import TusUpload

TUS_RESUMABLE = "1.0.0"
OFFSET_CONTENT_TYPE = "application/offset+octet-stream"

HEADER_TUS_RESUMABLE = "Tus-Resumable"
HEADER_UPLOAD_LENGTH = "Upload-Length"
HEADER_UPLOAD_OFFSET = "Upload-Offset"
HEADER_UPLOAD_METADATA = "Upload-Metadata"
HEADER_UPLOAD_EXTENSION = "Upload-Extension"
HEADER_LOCATION = "Location"
HEADER_CONTENT_LENGTH = "Content-Length"
HEADER_CONTENT_TYPE = "Content-Type"


@dataclass
class TusRequest:
    """HTTP request descriptor consumed by the transport"""

    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None


def encode_metadata(metadata: Mapping[str, str]) -> str:
    """
    Encode metadata as the Upload-Metadata header value.

    Each value is base64-encoded and pairs are joined as "key value,key value".
    """
    pairs = []
    for key, value in metadata.items():
        encoded = base64.b64encode(str(value).encode("utf-8")).decode("ascii")
        pairs.append(f"{key} {encoded}")
    return ",".join(pairs)


def validate_metadata(metadata: Mapping[str, str]) -> None:
    """
    Reject metadata keys the header format cannot carry.

    Raises:
        ValueError: If a key is empty or contains a space or a comma
    """
    for key in metadata:
        if not key or " " in key or "," in key:
            raise ValueError(f"Invalid metadata key: {key!r}")


def decode_metadata(header_value: str) -> Dict[str, str]:
    """Inverse of encode_metadata; a key without a value decodes to ''"""
    metadata: Dict[str, str] = {}
    if not header_value:
        return metadata
    for pair in header_value.split(","):
        pair = pair.strip()
        if not pair:
            continue
        key, _, encoded = pair.partition(" ")
        metadata[key] = base64.b64decode(encoded).decode("utf-8") if encoded else ""
    return metadata


def resolve_location(endpoint: str, location: str) -> str:
    """Resolve a (possibly relative) Location header against the endpoint"""
    return urljoin(endpoint, location)


def _merge_headers(protocol_headers: Dict[str, str], custom_headers: Optional[Mapping[str, str]]) -> Dict[str, str]:
    # Protocol headers win over custom headers with the same (case-insensitive) name
    reserved = {name.lower() for name in protocol_headers}
    headers = {
        name: value
        for name, value in (custom_headers or {}).items()
        if name.lower() not in reserved
    }
    headers.update(protocol_headers)
    return headers


def _require_location(upload: TusUpload, intent: str) -> str:
    if not upload.upload_location_url:
        raise ProtocolContractError(
            f"Cannot build {intent} request for upload {upload.id}: no upload location yet"
        )
    return upload.upload_location_url


def build_create_request(
    upload: TusUpload,
    endpoint: str,
    custom_headers: Optional[Mapping[str, str]] = None,
) -> TusRequest:
    """POST to the creation endpoint announcing the upload's length and metadata"""
    protocol_headers = {
        HEADER_TUS_RESUMABLE: TUS_RESUMABLE,
        HEADER_UPLOAD_LENGTH: str(upload.content_length),
        HEADER_UPLOAD_EXTENSION: "creation",
        HEADER_UPLOAD_METADATA: upload.encoded_metadata,
    }
    return TusRequest(
        method="POST",
        url=endpoint,
        headers=_merge_headers(protocol_headers, custom_headers),
    )


def build_patch_request(
    upload: TusUpload,
    chunk: bytes,
    custom_headers: Optional[Mapping[str, str]] = None,
) -> TusRequest:
    """
    PATCH one chunk at the upload's current offset.

    Raises:
        ProtocolContractError: If the upload has no location URL
    """
    url = _require_location(upload, "PATCH")
    protocol_headers = {
        HEADER_TUS_RESUMABLE: TUS_RESUMABLE,
        HEADER_CONTENT_TYPE: OFFSET_CONTENT_TYPE,
        HEADER_UPLOAD_OFFSET: str(upload.upload_offset),
        HEADER_CONTENT_LENGTH: str(len(chunk)),
        HEADER_UPLOAD_METADATA: upload.encoded_metadata,
    }
    return TusRequest(
        method="PATCH",
        url=url,
        headers=_merge_headers(protocol_headers, custom_headers),
        body=bytes(chunk),
    )


def build_head_request(
    upload: TusUpload,
    custom_headers: Optional[Mapping[str, str]] = None,
) -> TusRequest:
    """
    HEAD the upload resource to learn how many bytes the server holds.

    Raises:
        ProtocolContractError: If the upload has no location URL
    """
    url = _require_location(upload, "HEAD")
    protocol_headers = {HEADER_TUS_RESUMABLE: TUS_RESUMABLE}
    return TusRequest(
        method="HEAD",
        url=url,
        headers=_merge_headers(protocol_headers, custom_headers),
    )
