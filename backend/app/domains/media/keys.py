"""
Storage key generation.

Keys are partitioned by kind and visit so a visit's objects can be listed by
prefix, and carry a sortable UTC timestamp:

    {folder}/{visit_id}/visit_{kind}_{YYYYMMDD}_{HHMMSS}[_{suffix}].{ext}

Timestamps resolve to the second, so without the random suffix two uploads
of the same kind for the same visit in the same second get the same key.
"""
import re
import uuid
from datetime import datetime, timezone
from pathlib import PurePosixPath

from app.core.config import StorageConfig
from app.domains.media.errors import MediaValidationError
from app.domains.media.schemas import MediaKind

KIND_FOLDERS = {
    MediaKind.AUDIO: "audio_recordings",
    MediaKind.PHOTO: "photos",
}

DEFAULT_EXTENSIONS = {
    "audio/wav": "wav",
    "audio/mpeg": "mp3",
    "audio/ogg": "ogg",
    "audio/webm": "webm",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/heic": "heic",
}

_EXTENSION_RE = re.compile(r"^[A-Za-z0-9]{1,10}$")


def classify_content_type(content_type: str) -> MediaKind:
    """Resolve the record kind from the MIME type prefix."""
    if content_type.startswith("audio/"):
        return MediaKind.AUDIO
    if content_type.startswith("image/"):
        return MediaKind.PHOTO
    raise MediaValidationError(f"Unsupported content type: {content_type}")


def resolve_extension(file_name: str, content_type: str) -> str:
    """
    Extension of the requested file name.

    A name without an extension gets the default for its content type; an
    extension that is not plain alphanumeric is rejected.
    """
    suffix = PurePosixPath(file_name).suffix
    if suffix and suffix != ".":
        extension = suffix[1:]
        if not _EXTENSION_RE.match(extension):
            raise MediaValidationError(f"Invalid file extension: {extension!r}")
        return extension

    default = DEFAULT_EXTENSIONS.get(content_type)
    if default is None:
        raise MediaValidationError(f"File name {file_name!r} has no extension and none is known for {content_type}")
    return default


class StorageKeyGenerator:
    """Derives object store keys for new uploads."""

    def __init__(self, config: StorageConfig):
        self.unique_suffix = config.unique_key_suffix

    def generate(
        self,
        kind: MediaKind,
        visit_id: str,
        file_name: str,
        content_type: str,
        issued_at: datetime,
        force_unique: bool = False,
    ) -> str:
        """
        Build the storage key for an upload issued at `issued_at`.

        Args:
            force_unique: Append the random suffix even when the generator is
                configured without it (used when retrying after a conflict)
        """
        if not visit_id or "/" in visit_id:
            raise MediaValidationError(f"Invalid visit id for storage key: {visit_id!r}")

        extension = resolve_extension(file_name, content_type)
        stamp = issued_at.astimezone(timezone.utc).strftime("%Y%m%d_%H%M%S")
        name = f"visit_{kind.value}_{stamp}"
        if self.unique_suffix or force_unique:
            name = f"{name}_{uuid.uuid4().hex[:8]}"

        return f"{KIND_FOLDERS[kind]}/{visit_id}/{name}.{extension}"

    @staticmethod
    def file_name_from_key(storage_key: str) -> str:
        """The generated file name is the last path segment of the key."""
        return storage_key.rsplit("/", 1)[-1]
