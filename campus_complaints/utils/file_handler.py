import logging
import time
from pathlib import Path
from typing import Optional
from decouple import config

from campus_complaints.core.errors import ValidationError, RemoteError, NotFoundError
from campus_complaints.core.security import generate_file_token, verify_file_token

logger = logging.getLogger(__name__)

# Configuration
UPLOAD_DIR = config("UPLOAD_DIR", default="uploads")
MAX_ATTACHMENT_SIZE = config("MAX_ATTACHMENT_SIZE", cast=int, default=5 * 1024 * 1024)  # 5 MiB
SIGNED_URL_TTL = config("SIGNED_URL_TTL", cast=int, default=3600)
PUBLIC_BASE_URL = config("PUBLIC_BASE_URL", default="http://localhost:8000")
USE_S3 = config("USE_S3", cast=bool, default=False)

ALLOWED_MIME_TYPES = {
    'image/jpeg': 'jpg',
    'image/png': 'png',
    'image/gif': 'gif',
    'application/pdf': 'pdf',
    'application/msword': 'doc',
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document': 'docx',
}

# Filename extensions accepted for each allowed MIME type
ALLOWED_EXTENSIONS = {
    'image/jpeg': {'jpg', 'jpeg'},
    'image/png': {'png'},
    'image/gif': {'gif'},
    'application/pdf': {'pdf'},
    'application/msword': {'doc'},
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document': {'docx'},
}

# Stored extension -> served media type
MEDIA_TYPES = {ext: mime for mime, ext in ALLOWED_MIME_TYPES.items()}


def _filename_extension(filename: str) -> str:
    if '.' not in filename:
        return ''
    return filename.rsplit('.', 1)[-1].lower()


def validate_attachment(filename: Optional[str], content_type: Optional[str], size: int) -> None:
    """
    Reject anything outside the MIME allow-list, with a filename extension
    that disagrees with its MIME type, or over the size cap
    """
    if not filename:
        raise ValidationError("No file selected")
    if content_type not in ALLOWED_MIME_TYPES:
        raise ValidationError(
            f"File type '{content_type}' not allowed. Allowed types: {', '.join(sorted(set(ALLOWED_MIME_TYPES.values())))}"
        )
    extension = _filename_extension(filename)
    if extension and extension not in ALLOWED_EXTENSIONS[content_type]:
        raise ValidationError(f"File extension '.{extension}' does not match file type '{content_type}'")
    if size > MAX_ATTACHMENT_SIZE:
        raise ValidationError(
            f"File size too large. Maximum size is {MAX_ATTACHMENT_SIZE / (1024 * 1024):.1f}MB"
        )


def attachment_extension(content_type: str) -> str:
    """
    The stored extension always comes from the MIME allow-list, never the client filename
    """
    return ALLOWED_MIME_TYPES[content_type]


def media_type_for(filename: str) -> str:
    return MEDIA_TYPES.get(_filename_extension(filename), 'application/octet-stream')


def build_attachment_path(owner_id: int, complaint_id: int, extension: str, timestamp_ms: Optional[int] = None) -> str:
    """
    Blobs live under {owner}/{complaint}/{timestamp}.{ext}
    """
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"{owner_id}/{complaint_id}/{timestamp_ms}.{extension}"


def _safe_path(root: Path, relative: str) -> Path:
    target = (root / relative).resolve()
    if root.resolve() not in target.parents:
        raise NotFoundError("File not found")
    return target


class LocalBlobStore:
    """
    Stores attachments on disk; downloads go through a token-checked route
    """

    def __init__(self, root: str = UPLOAD_DIR, base_url: str = PUBLIC_BASE_URL):
        self.root = Path(root)
        self.base_url = base_url.rstrip('/')

    def upload(self, path: str, data: bytes, content_type: Optional[str] = None) -> None:
        try:
            target = _safe_path(self.root, path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise RemoteError(f"Failed to store file: {e}")
        logger.info(f"Stored attachment {path} ({len(data)} bytes)")

    def create_signed_url(self, path: str, ttl_seconds: int = SIGNED_URL_TTL) -> str:
        token = generate_file_token(path, ttl_seconds)
        return f"{self.base_url}/api/v1/files/{path}?token={token}"

    def resolve(self, path: str, token: str) -> Path:
        if not verify_file_token(token, path):
            raise NotFoundError("File not found")
        target = _safe_path(self.root, path)
        if not target.is_file():
            raise NotFoundError("File not found")
        return target


class S3BlobStore:
    """
    Stores attachments in a private bucket and hands out presigned URLs
    """

    def __init__(self):
        import boto3

        self.bucket = config("AWS_BUCKET_NAME", default="")
        self.client = boto3.client(
            's3',
            aws_access_key_id=config("AWS_ACCESS_KEY_ID", default=""),
            aws_secret_access_key=config("AWS_SECRET_ACCESS_KEY", default=""),
            region_name=config("AWS_REGION", default="us-east-1"),
        )

    def upload(self, path: str, data: bytes, content_type: Optional[str] = None) -> None:
        from botocore.exceptions import BotoCoreError, ClientError

        extra = {"ContentType": content_type} if content_type else {}
        try:
            self.client.put_object(Bucket=self.bucket, Key=path, Body=data, **extra)
        except (BotoCoreError, ClientError) as e:
            raise RemoteError(f"Error uploading to S3: {e}")

    def create_signed_url(self, path: str, ttl_seconds: int = SIGNED_URL_TTL) -> str:
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            return self.client.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket, 'Key': path},
                ExpiresIn=ttl_seconds,
            )
        except (BotoCoreError, ClientError) as e:
            raise RemoteError(f"Error generating presigned URL: {e}")


_blob_store = None


def get_blob_store():
    global _blob_store
    if _blob_store is None:
        _blob_store = S3BlobStore() if USE_S3 else LocalBlobStore()
    return _blob_store
