"""Attachment blob storage backed by a Supabase Storage bucket."""
from asyncio import to_thread
from typing import Optional
from uuid import uuid4
from supabase import Client
import logging

from config.settings import settings
from core.errors import PersistenceError

logger = logging.getLogger(__name__)


class AttachmentStorage:
    """Upload attachment bytes and hand back a retrievable reference.

    No content validation happens here; classification is the ingress's job.
    """

    def __init__(self, supabase: Client, bucket: Optional[str] = None):
        self.supabase = supabase
        self.bucket = bucket or settings.ATTACHMENTS_BUCKET

    @staticmethod
    def build_path(conversation_id: str, extension: str = "") -> str:
        """<conversation>/<random>.<ext> so uploads never collide."""
        suffix = f".{extension.lstrip('.')}" if extension else ""
        return f"{conversation_id}/{uuid4().hex}{suffix}"

    async def upload(
        self,
        conversation_id: str,
        data: bytes,
        content_type: str,
        extension: str = "",
    ) -> str:
        """Store ``data`` and return its public URL."""
        path = self.build_path(conversation_id, extension)
        bucket = self.supabase.storage.from_(self.bucket)
        try:
            await to_thread(
                lambda: bucket.upload(
                    path,
                    data,
                    {"content-type": content_type or "application/octet-stream"},
                )
            )
            url = await to_thread(lambda: bucket.get_public_url(path))
        except Exception as e:
            logger.error(f"Error uploading attachment to {self.bucket}/{path}: {e}", exc_info=True)
            raise PersistenceError("Could not store attachment") from e

        logger.info(f"Stored attachment {path} ({len(data)} bytes)")
        return url
