"""Word document text extraction.

Zip-based .docx files go through docx2txt. Legacy .doc files are OLE2
compound files; their text is read from the WordDocument stream using the
piece table stored in the table stream (Word 97-2003 binary format).
"""
import re
import struct
import zipfile
from io import BytesIO
from typing import Optional

import docx2txt
import olefile

from media_extractor.errors import DocumentFormatError
from media_extractor.extraction.result import ExtractionResult, METHOD_DOCX, METHOD_DOC_LEGACY
from media_extractor.format_classifier import OLE2_MAGIC, ZIP_MAGIC

# FIB offsets in the WordDocument stream
_FIB_IDENT = 0x0000
_FIB_FLAGS = 0x000A
_FIB_CCP_TEXT = 0x004C
_FIB_FC_CLX = 0x01A2
_WORD_IDENT = 0xA5EC

_FLAG_ENCRYPTED = 0x0100
_FLAG_WHICH_TABLE = 0x0200

_CLX_PRC = 0x01
_CLX_PCDT = 0x02
_PCD_SIZE = 8
_FC_COMPRESSED = 0x40000000

# Field instructions sit between begin (0x13) and separator (0x14) marks
_FIELD_CODE = re.compile("\x13[^\x13\x14\x15]*\x14")
_CONTROL = re.compile("[\x00-\x08\x0e-\x1f]")


def _is_openxml(mime_type: str) -> bool:
    return not mime_type or "openxmlformats" in mime_type or "docx" in mime_type


def extract_docx_text(content: bytes) -> str:
    try:
        return docx2txt.process(BytesIO(content)) or ""
    except (zipfile.BadZipFile, KeyError) as e:
        raise DocumentFormatError(f"Not a valid .docx file: {e}") from e


def _clean_word_text(text: str) -> str:
    text = _FIELD_CODE.sub("", text)
    text = text.replace("\x13", "").replace("\x15", "")
    text = text.replace("\r", "\n").replace("\x0b", "\n").replace("\x0c", "\n").replace("\x07", "\t")
    text = _CONTROL.sub("", text)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def _read_pieces(word: bytes, clx: bytes, ccp_text: int) -> str:
    pos = 0
    # Skip property modifiers preceding the piece table
    while pos < len(clx) and clx[pos] == _CLX_PRC:
        (cb,) = struct.unpack_from("<H", clx, pos + 1)
        pos += 3 + cb
    if pos >= len(clx) or clx[pos] != _CLX_PCDT:
        raise DocumentFormatError("Piece table not found")

    (lcb,) = struct.unpack_from("<I", clx, pos + 1)
    plc = clx[pos + 5:pos + 5 + lcb]
    count = (lcb - 4) // (4 + _PCD_SIZE)
    cps = struct.unpack_from(f"<{count + 1}i", plc, 0)

    chunks = []
    for i in range(count):
        (fc_raw,) = struct.unpack_from("<I", plc, (count + 1) * 4 + i * _PCD_SIZE + 2)
        length = cps[i + 1] - cps[i]
        fc = fc_raw & ~_FC_COMPRESSED
        if fc_raw & _FC_COMPRESSED:
            start = fc // 2
            chunks.append(word[start:start + length].decode("cp1252", errors="replace"))
        else:
            chunks.append(word[fc:fc + 2 * length].decode("utf-16-le", errors="replace"))
    return "".join(chunks)[:ccp_text]


def extract_legacy_doc_text(content: bytes) -> str:
    """Main document text of a Word 97-2003 .doc file."""
    try:
        ole = olefile.OleFileIO(BytesIO(content))
    except OSError as e:
        raise DocumentFormatError(f"Not an OLE2 document: {e}") from e

    try:
        if not ole.exists("WordDocument"):
            raise DocumentFormatError("OLE2 container has no WordDocument stream")
        word = ole.openstream("WordDocument").read()
        if len(word) < _FIB_FC_CLX + 8:
            raise DocumentFormatError("WordDocument stream too short")

        ident, = struct.unpack_from("<H", word, _FIB_IDENT)
        flags, = struct.unpack_from("<H", word, _FIB_FLAGS)
        if ident != _WORD_IDENT:
            raise DocumentFormatError(f"Unexpected Word identifier {ident:#x}")
        if flags & _FLAG_ENCRYPTED:
            raise DocumentFormatError("Encrypted .doc files are not supported")

        table_name = "1Table" if flags & _FLAG_WHICH_TABLE else "0Table"
        if not ole.exists(table_name):
            raise DocumentFormatError(f"Table stream {table_name} missing")
        table = ole.openstream(table_name).read()

        ccp_text, = struct.unpack_from("<i", word, _FIB_CCP_TEXT)
        fc_clx, lcb_clx = struct.unpack_from("<Ii", word, _FIB_FC_CLX)
        clx = table[fc_clx:fc_clx + lcb_clx]
        try:
            text = _read_pieces(word, clx, ccp_text)
        except struct.error as e:
            raise DocumentFormatError(f"Corrupt piece table: {e}") from e
    finally:
        ole.close()

    return _clean_word_text(text)


def extract_word_text(content: bytes, mime_type: Optional[str] = None) -> ExtractionResult:
    """
    Extract text from a Word document, choosing the parser by container.

    The byte signature decides when present; otherwise the declared MIME type.

    Raises:
        DocumentFormatError if the bytes do not fit the chosen format
    """
    mime_type = (mime_type or "").lower()
    if content[:2] == ZIP_MAGIC or (content[:4] != OLE2_MAGIC and _is_openxml(mime_type)):
        return ExtractionResult(text=extract_docx_text(content), method=METHOD_DOCX)
    return ExtractionResult(text=extract_legacy_doc_text(content), method=METHOD_DOC_LEGACY)
