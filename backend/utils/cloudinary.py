import cloudinary
import cloudinary.uploader

from config.env import (
    CLOUDINARY_CLOUD_NAME,
    CLOUDINARY_API_KEY,
    CLOUDINARY_API_SECRET,
)

cloudinary.config(
    cloud_name=CLOUDINARY_CLOUD_NAME,
    api_key=CLOUDINARY_API_KEY,
    api_secret=CLOUDINARY_API_SECRET,
    secure=True,
)


def upload_document(file: bytes, folder: str, public_id: str) -> dict:
    """Rendered PDFs go up as raw resources; re-uploads overwrite."""
    return cloudinary.uploader.upload(
        file,
        folder=folder,
        public_id=public_id,
        resource_type="raw",
        overwrite=True,
    )
