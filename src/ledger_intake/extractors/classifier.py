"""
Source classifier.

Maps a file's extension or MIME type to an import file type and the coarse
source tag the orchestrator routes on. Rules are checked in order:

1. image MIME or png/jpg/jpeg/webp -> receipt_image (image)
2. application/pdf or .pdf         -> bank_pdf (pdf)
3. text/csv or .csv                -> generic_csv (csv)
4. application/json or .json       -> backup_json (json)
5. .xlsx/.xls                      -> spreadsheet (csv)
6. anything else                   -> generic_csv (csv)
"""

import mimetypes
from dataclasses import dataclass
from pathlib import Path

from ledger_intake.schemas.transactions import ImportFileType, ImportSource

IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "webp"}
SPREADSHEET_EXTENSIONS = {"xlsx", "xls"}

_SOURCE_BY_TYPE = {
    ImportFileType.RECEIPT_IMAGE: ImportSource.IMAGE,
    ImportFileType.BANK_PDF: ImportSource.PDF,
    ImportFileType.BACKUP_JSON: ImportSource.JSON,
}


@dataclass(frozen=True)
class SourceFile:
    """An uploaded file held in memory."""

    name: str
    data: bytes
    mime_type: str = ""

    @property
    def size(self) -> int:
        return len(self.data)

    @classmethod
    def from_path(cls, path: Path) -> "SourceFile":
        mime_type, _ = mimetypes.guess_type(path.name)
        return cls(name=path.name, data=path.read_bytes(), mime_type=mime_type or "")


def classify_file(file_name: str, mime_type: str = "") -> ImportFileType:
    extension = Path(file_name).suffix.lower().lstrip(".")
    mime = (mime_type or "").lower()

    if mime.startswith("image/") or extension in IMAGE_EXTENSIONS:
        return ImportFileType.RECEIPT_IMAGE
    if mime == "application/pdf" or extension == "pdf":
        return ImportFileType.BANK_PDF
    if mime == "text/csv" or extension == "csv":
        return ImportFileType.GENERIC_CSV
    if mime == "application/json" or extension == "json":
        return ImportFileType.BACKUP_JSON
    if extension in SPREADSHEET_EXTENSIONS:
        return ImportFileType.SPREADSHEET
    return ImportFileType.GENERIC_CSV


def source_for(file_type: ImportFileType) -> ImportSource:
    return _SOURCE_BY_TYPE.get(file_type, ImportSource.CSV)


class SourceClassifier:
    """Classifies source files for routing."""

    def classify(self, source: SourceFile) -> tuple[ImportFileType, ImportSource]:
        file_type = classify_file(source.name, source.mime_type)
        return file_type, source_for(file_type)
