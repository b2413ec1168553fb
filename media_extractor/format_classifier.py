"""Detect the real media category of a download from its leading bytes."""
from typing import Optional

from media_extractor.queue.models import IMAGE, AUDIO, PDF, DOCX

DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
DOC_MIME = "application/msword"

MIN_SIGNATURE_LENGTH = 8

OLE2_MAGIC = b"\xd0\xcf\x11\xe0"
ZIP_MAGIC = b"PK"

# OLE2 containers we have no parser for: (content-type fragment, file extension)
_UNSUPPORTED_OLE2 = (
    ("ms-outlook", ".msg"),
    ("ms-excel", ".xls"),
)


def _is_riff(buffer: bytes, form: bytes) -> bool:
    return buffer[:4] == b"RIFF" and buffer[8:12] == form


def _is_mp3(buffer: bytes) -> bool:
    if buffer[:3] == b"ID3":
        return True
    return buffer[0] == 0xFF and buffer[1] in (0xFB, 0xF3, 0xF2)


def _ole2_category(content_type: str, file_name: str) -> Optional[str]:
    for type_fragment, extension in _UNSUPPORTED_OLE2:
        if type_fragment in content_type or file_name.endswith(extension):
            return None
    return DOCX


def detect_file_type(buffer: bytes, content_type: Optional[str] = None,
                     file_name: Optional[str] = None) -> Optional[str]:
    """
    Classify a buffer by magic bytes.

    Args:
        buffer: Downloaded content
        content_type: Response/declared content type, used only to tell OLE2 containers apart
        file_name: Original file name, same purpose

    Returns:
        'pdf', 'docx', 'image', 'audio', or None when unknown or unsupported
    """
    if not buffer or len(buffer) < MIN_SIGNATURE_LENGTH:
        return None

    if buffer[:4] == b"%PDF":
        return PDF
    # DOCX/XLSX/PPTX all share the zip container
    if buffer[:2] == ZIP_MAGIC:
        return DOCX
    if buffer[:4] == OLE2_MAGIC:
        return _ole2_category((content_type or "").lower(), (file_name or "").lower())
    if buffer[:4] == b"\x89PNG" or buffer[:3] == b"\xff\xd8\xff" or buffer[:4] == b"GIF8":
        return IMAGE
    if _is_riff(buffer, b"WEBP"):
        return IMAGE
    if _is_mp3(buffer) or buffer[:4] == b"OggS" or _is_riff(buffer, b"WAVE"):
        return AUDIO
    return None


def classify_mime_type(mime_type: Optional[str]) -> str:
    """Map a declared MIME type to a media category. Unknown types default to image."""
    if not mime_type:
        return IMAGE
    m = mime_type.lower()
    if m.startswith("image/"):
        return IMAGE
    if m.startswith("audio/"):
        return AUDIO
    if m == "application/pdf":
        return PDF
    if m in (DOCX_MIME, DOC_MIME):
        return DOCX
    # No video extractor; thumbnails/frames go through OCR
    if m.startswith("video/"):
        return IMAGE
    return IMAGE


def resolve_media_type(buffer: bytes, content_type: Optional[str] = None,
                       file_name: Optional[str] = None) -> Optional[str]:
    """
    Category from byte signature, falling back to the declared content type.

    The content-type fallback is only trusted when it points somewhere other
    than the image default, since that default carries no information.
    """
    detected = detect_file_type(buffer, content_type, file_name)
    if detected:
        return detected
    if content_type:
        declared = classify_mime_type(content_type)
        if declared != IMAGE:
            return declared
    return None
