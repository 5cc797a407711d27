"""Client for the Skynet content-addressed storage network."""

from skyclient.api.schemas import Skykey, SkyfileMetadata, Subfile
from skyclient.client import SkynetClient
from skyclient.config import DownloadOptions, TransferConfig, UploadOptions
from skyclient.core.skylink import Skylink, decode_bitfield, encode, from_text, to_text
from skyclient.errors import (
    AllPortalsExhausted,
    Cancelled,
    IntegrityMismatch,
    InvalidBitfield,
    MalformedSkylink,
    NotAFileSkylink,
    OperationTimeout,
    OutOfOrderChunk,
    PortalIntegrityViolation,
    PortalRequestFailed,
    SkynetError,
)

__version__ = "1.0.0"

__all__ = [
    "AllPortalsExhausted",
    "Cancelled",
    "DownloadOptions",
    "IntegrityMismatch",
    "InvalidBitfield",
    "MalformedSkylink",
    "NotAFileSkylink",
    "OperationTimeout",
    "OutOfOrderChunk",
    "PortalIntegrityViolation",
    "PortalRequestFailed",
    "SkyfileMetadata",
    "Skykey",
    "Skylink",
    "SkynetClient",
    "SkynetError",
    "Subfile",
    "TransferConfig",
    "UploadOptions",
    "decode_bitfield",
    "encode",
    "from_text",
    "to_text",
]
