"""PDF processing utilities: encryption probe, decryption, page splitting, text."""
import io
import base64
import logging
import fitz  # PyMuPDF
import pdfplumber
from PIL import Image
from config import settings
from errors import EncryptionError, EncryptionErrorKind

logger = logging.getLogger("StatementImporter.PDF")

HEADER_SCAN_BYTES = 16384
TRAILER_SCAN_BYTES = 4096
ENCRYPTION_MARKERS = (b"/Encrypt",)  # also matches /EncryptMetadata


# ─── Encryption ───────────────────────────────────────────────────────────────

def probe_encryption(data: bytes) -> bool:
    """Heuristic check for a password-protected PDF.

    Scans the header region and, for inputs larger than it, the trailer region
    for encryption dictionary markers.  This is a byte-signature scan, not a
    parse: unusual encryption layouts can slip through.
    """
    header = data[:HEADER_SCAN_BYTES]
    if any(marker in header for marker in ENCRYPTION_MARKERS):
        return True
    if len(data) > HEADER_SCAN_BYTES:
        trailer = data[-TRAILER_SCAN_BYTES:]
        if any(marker in trailer for marker in ENCRYPTION_MARKERS):
            return True
    return False


def decrypt_pdf(data: bytes, password: str) -> bytes:
    """Return an unencrypted copy of ``data`` opened with ``password``.

    Raises EncryptionError(WRONG_PASSWORD) when the password is rejected and
    EncryptionError(DECRYPT_FAILURE) for anything else.
    """
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except Exception as e:
        logger.warning(f"  🔐 Could not open PDF for decryption: {e}")
        raise EncryptionError(EncryptionErrorKind.DECRYPT_FAILURE) from e

    try:
        if doc.needs_pass and not doc.authenticate(password):
            raise EncryptionError(EncryptionErrorKind.WRONG_PASSWORD)
        return doc.tobytes(encryption=fitz.PDF_ENCRYPT_NONE)
    except EncryptionError:
        raise
    except Exception as e:
        logger.warning(f"  🔐 Decryption failed: {e}")
        raise EncryptionError(EncryptionErrorKind.DECRYPT_FAILURE) from e
    finally:
        doc.close()


# ─── Pages ────────────────────────────────────────────────────────────────────

def get_page_count(data: bytes) -> int:
    doc = fitz.open(stream=data, filetype="pdf")
    try:
        return doc.page_count
    finally:
        doc.close()


def split_into_chunks(data: bytes, pages_per_chunk: int) -> list[dict]:
    """Split a PDF into sequential, non-overlapping page ranges.

    Returns a list of {start_page, end_page, content} dicts (1-based,
    inclusive page numbers) in original page order.  A document that fits in
    one chunk is returned unchanged as a single chunk.
    """
    src = fitz.open(stream=data, filetype="pdf")
    try:
        total = src.page_count
        if total <= pages_per_chunk:
            return [{"start_page": 1, "end_page": max(total, 1), "content": data}]

        chunks = []
        for start in range(0, total, pages_per_chunk):
            end = min(start + pages_per_chunk, total) - 1
            part = fitz.open()
            part.insert_pdf(src, from_page=start, to_page=end)
            chunks.append({
                "start_page": start + 1,
                "end_page": end + 1,
                "content": part.tobytes(),
            })
            part.close()
        return chunks
    finally:
        src.close()


def extract_text_with_pdfplumber(data: bytes) -> list[dict]:
    """
    Extract text from each page of a PDF using pdfplumber.
    Returns a list of {page_number, text} dicts.
    """
    pages = []
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        for i, page in enumerate(pdf.pages):
            text = page.extract_text() or ""
            pages.append({"page_number": i + 1, "text": text})
    return pages


def extract_full_text(data: bytes) -> str:
    """Extract all text from a PDF, concatenated."""
    pages = extract_text_with_pdfplumber(data)
    return "\n\n".join(p["text"] for p in pages).strip()


# ─── OCR fallback (scanned statements) ────────────────────────────────────────

def pdf_page_to_image(data: bytes, page_number: int = 0, dpi: int = None) -> Image.Image:
    """Convert a specific PDF page to a PIL Image."""
    dpi = dpi or settings.PDF_TO_IMAGE_DPI
    doc = fitz.open(stream=data, filetype="pdf")
    try:
        page = doc.load_page(page_number)
        zoom = dpi / 72.0
        pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom))
        return Image.frombytes("RGB", [pix.width, pix.height], pix.samples)
    finally:
        doc.close()


def image_to_base64(image: Image.Image, format: str = "PNG") -> str:
    """Convert a PIL Image to base64 string."""
    buffered = io.BytesIO()
    image.save(buffered, format=format)
    return base64.b64encode(buffered.getvalue()).decode("utf-8")


OCR_PROMPT = (
    "You are an OCR engine. Extract ALL text from this bank statement page "
    "exactly as it appears, preserving the layout as much as possible.\n\n"
    "Rules:\n"
    "- Reproduce every line of text you see, in reading order (top to bottom, left to right)\n"
    "- Include all numbers, dates, amounts, and descriptions exactly as printed\n"
    "- For table rows, separate columns with ' | ' (pipe with spaces)\n"
    "- If text is blurry or unclear, provide your best reading with [?] for uncertain parts\n"
    "- Do NOT add any commentary, output ONLY the extracted text"
)


def ocr_page_with_vision(data: bytes, page_number: int, dpi: int = None) -> str:
    """OCR a single PDF page using the vision deployment."""
    from services.llm_client import chat_completion_with_image

    img = pdf_page_to_image(data, page_number, dpi=dpi)
    return chat_completion_with_image(
        prompt=OCR_PROMPT,
        image_base64=image_to_base64(img),
        max_tokens=4096,
        timeout=settings.EXTRACTION_TIMEOUT_SECONDS,
    )


def ocr_all_pages(data: bytes, dpi: int = None) -> str:
    """OCR every page of a scanned PDF and return the concatenated text."""
    num_pages = get_page_count(data)
    texts = []
    for i in range(num_pages):
        logger.info(f"  🔍 OCR page {i+1}/{num_pages}...")
        texts.append(ocr_page_with_vision(data, i, dpi=dpi))
    return "\n\n".join(texts).strip()
