import os
from pathlib import Path
from uuid import uuid4

from PIL import Image
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from rental_workflow.errors import ValidationError
from rental_workflow.models.base import utcnow

IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "webp"}
ALLOWED_EXTENSIONS = IMAGE_EXTENSIONS | {"pdf", "doc", "docx", "txt"}


class FileService:
    @staticmethod
    def _extension(filename):
        if "." not in filename:
            return ""
        return filename.rsplit(".", 1)[1].lower()

    @classmethod
    def save_document(cls, storage: FileStorage, upload_root: str, order_id: int):
        if not storage or not storage.filename:
            raise ValidationError("A file is required.")

        filename = secure_filename(storage.filename)
        extension = cls._extension(filename)
        if not filename or extension not in ALLOWED_EXTENSIONS:
            raise ValidationError("Unsupported document format.")

        # Photos of damage or receipts are common; make sure they really are images.
        if extension in IMAGE_EXTENSIONS:
            try:
                img = Image.open(storage.stream)
                img.verify()
                storage.stream.seek(0)
            except Exception as exc:
                raise ValidationError("Invalid image file.") from exc

        dated_folder = utcnow().strftime("%Y/%m")
        relative_folder = Path(f"rental-{order_id}") / dated_folder
        folder = Path(upload_root) / relative_folder
        folder.mkdir(parents=True, exist_ok=True)

        unique_filename = f"{uuid4().hex}.{extension}"
        storage.save(folder / unique_filename)
        return (relative_folder / unique_filename).as_posix(), filename

    @staticmethod
    def delete(storage_ref: str, upload_root: str):
        root = Path(upload_root).resolve()
        target = (root / storage_ref).resolve()
        if root not in target.parents:
            raise ValidationError("Invalid storage reference.")
        if target.exists():
            os.remove(target)
