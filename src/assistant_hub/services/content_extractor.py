from __future__ import annotations

from enum import Enum
from typing import Callable, Dict, List, Optional
from zipfile import BadZipFile, ZipFile
import io
import logging
import os
import re
import xml.etree.ElementTree as ET

from ..domain.errors import ExtractionError, UnsupportedFormat

# Optional imports guarded
try:
    from docx import Document  # type: ignore
except Exception:  # pragma: no cover
    Document = None  # type: ignore

try:
    from pypdf import PdfReader  # type: ignore
except Exception:  # pragma: no cover
    PdfReader = None  # type: ignore

logger = logging.getLogger(__name__)


class ArtifactKind(str, Enum):
    AUDIO = "audio"
    DOCUMENT = "document"
    TEXT = "text"


AUDIO_EXTENSIONS = {".mp3", ".mpga", ".mpeg", ".m4a", ".wav", ".ogg", ".oga", ".opus", ".webm", ".flac", ".aac"}
TEXT_EXTENSIONS = {
    ".txt", ".md", ".markdown", ".csv", ".tsv", ".json", ".xml", ".html", ".htm",
    ".log", ".yaml", ".yml", ".ini", ".rst",
}
DOCUMENT_EXTENSIONS = {".pdf", ".docx", ".pptx", ".xlsx", ".odt", ".odp", ".ods"}

_NS = {
    "a": "http://schemas.openxmlformats.org/drawingml/2006/main",
    "s": "http://schemas.openxmlformats.org/spreadsheetml/2006/main",
    "text": "urn:oasis:names:tc:opendocument:xmlns:text:1.0",
}


def _extension(filename: str) -> str:
    return os.path.splitext((filename or "").strip().lower())[1]


def classify(filename: str, media_type: Optional[str] = None) -> ArtifactKind:
    """Decide how an upload becomes text, from its media type and extension."""
    mt = (media_type or "").split(";")[0].strip().lower()
    ext = _extension(filename)
    if "audio" in mt or ext in AUDIO_EXTENSIONS:
        return ArtifactKind.AUDIO
    if ext in DOCUMENT_EXTENSIONS:
        return ArtifactKind.DOCUMENT
    if ext in TEXT_EXTENSIONS or mt.startswith("text/"):
        return ArtifactKind.TEXT
    raise UnsupportedFormat(f"Unsupported file type: {filename or mt or 'unknown'}")


def extract(data: bytes, filename: str, media_type: Optional[str] = None) -> str:
    """Turn a document or text upload into plain text.

    Audio is classified but not decoded here; callers route it to a
    transcription provider.
    """
    kind = classify(filename, media_type)
    if kind == ArtifactKind.AUDIO:
        raise UnsupportedFormat("Audio files must be transcribed, not extracted")
    if kind == ArtifactKind.TEXT:
        return _decode_text(data)
    ext = _extension(filename)
    decoder = _DECODERS[ext]
    try:
        return decoder(data)
    except (UnsupportedFormat, ExtractionError):
        raise
    except Exception as exc:
        logger.warning("extract_failed", extra={"upload_name": filename, "err": str(exc)})
        raise ExtractionError(f"Could not read {filename}: {exc}") from exc


def _decode_text(data: bytes) -> str:
    return (data or b"").decode("utf-8-sig", errors="replace")


def _pdf_text(data: bytes) -> str:
    if PdfReader is None:
        raise ExtractionError("PDF support is not installed")
    reader = PdfReader(io.BytesIO(data))
    texts: List[str] = []
    for page in reader.pages:
        t = page.extract_text() or ""
        if t:
            texts.append(t)
    return "\n".join(texts)


def _docx_text(data: bytes) -> str:
    if Document is None:
        raise ExtractionError("DOCX support is not installed")
    doc = Document(io.BytesIO(data))
    paragraphs = [p.text for p in doc.paragraphs if p.text and p.text.strip()]
    return "\n".join(paragraphs)


def _open_zip(data: bytes) -> ZipFile:
    try:
        return ZipFile(io.BytesIO(data))
    except BadZipFile as exc:
        raise ExtractionError("File is not a valid office document") from exc


def _numbered(names: List[str], pattern: str) -> List[str]:
    rx = re.compile(pattern)
    found = [(int(m.group(1)), n) for n in names for m in [rx.fullmatch(n)] if m]
    return [n for _, n in sorted(found)]


def _pptx_text(data: bytes) -> str:
    with _open_zip(data) as zf:
        slides = _numbered(zf.namelist(), r"ppt/slides/slide(\d+)\.xml")
        out: List[str] = []
        for name in slides:
            root = ET.fromstring(zf.read(name))
            for para in root.iter(f"{{{_NS['a']}}}p"):
                runs = [t.text for t in para.iter(f"{{{_NS['a']}}}t") if t.text]
                if runs:
                    out.append("".join(runs))
    return "\n".join(out)


def _xlsx_text(data: bytes) -> str:
    with _open_zip(data) as zf:
        names = zf.namelist()
        shared: List[str] = []
        if "xl/sharedStrings.xml" in names:
            root = ET.fromstring(zf.read("xl/sharedStrings.xml"))
            for si in root.findall("s:si", _NS):
                shared.append("".join(t.text or "" for t in si.iter(f"{{{_NS['s']}}}t")))
        rows: List[str] = []
        for name in _numbered(names, r"xl/worksheets/sheet(\d+)\.xml"):
            root = ET.fromstring(zf.read(name))
            for row in root.iter(f"{{{_NS['s']}}}row"):
                cells: List[str] = []
                for cell in row.findall("s:c", _NS):
                    kind = cell.get("t")
                    if kind == "inlineStr":
                        cells.append("".join(t.text or "" for t in cell.iter(f"{{{_NS['s']}}}t")))
                        continue
                    value = cell.find("s:v", _NS)
                    if value is None or value.text is None:
                        continue
                    if kind == "s":
                        idx = int(value.text)
                        cells.append(shared[idx] if idx < len(shared) else "")
                    else:
                        cells.append(value.text)
                if any(c.strip() for c in cells):
                    rows.append("\t".join(cells))
    return "\n".join(rows)


def _odf_text(data: bytes) -> str:
    with _open_zip(data) as zf:
        if "content.xml" not in zf.namelist():
            raise ExtractionError("OpenDocument file has no content")
        root = ET.fromstring(zf.read("content.xml"))
    out: List[str] = []
    for el in root.iter():
        if el.tag in (f"{{{_NS['text']}}}p", f"{{{_NS['text']}}}h"):
            text = "".join(el.itertext()).strip()
            if text:
                out.append(text)
    return "\n".join(out)


_DECODERS: Dict[str, Callable[[bytes], str]] = {
    ".pdf": _pdf_text,
    ".docx": _docx_text,
    ".pptx": _pptx_text,
    ".xlsx": _xlsx_text,
    ".odt": _odf_text,
    ".odp": _odf_text,
    ".ods": _odf_text,
}
