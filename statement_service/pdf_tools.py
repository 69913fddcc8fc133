import asyncio
import io
import logging
import os
import tempfile
from typing import List, Optional

import pdfplumber
from pdfminer.pdfdocument import PDFPasswordIncorrect

from . import config
from .errors import (
    DecryptionToolError,
    ImageBasedPdfError,
    IncorrectPasswordError,
    PasswordRequiredError,
    TextExtractionError,
)

logger = logging.getLogger(__name__)

# qpdf exit status 3 means "succeeded with warnings".
QPDF_OK_CODES = {0, 3}


async def decrypt_pdf(pdf_bytes: bytes, password: str) -> bytes:
    """
    Decrypt ``pdf_bytes`` with the qpdf command-line tool.

    Both the encrypted input and the decrypted output live in a private
    temporary directory that is removed on every exit path.
    """
    os.makedirs(config.TEMP_DIR, exist_ok=True)
    with tempfile.TemporaryDirectory(prefix="stmt-", dir=config.TEMP_DIR) as workdir:
        original_path = os.path.join(workdir, "original.pdf")
        decrypted_path = os.path.join(workdir, "decrypted.pdf")
        with open(original_path, "wb") as f:
            f.write(pdf_bytes)

        try:
            proc = await asyncio.create_subprocess_exec(
                config.QPDF_BIN,
                f"--password={password}",
                "--decrypt",
                original_path,
                decrypted_path,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise DecryptionToolError(f"Decryption tool unavailable: {exc}") from exc
        _, stderr = await proc.communicate()
        detail = (stderr or b"").decode("utf-8", errors="replace").strip()

        if proc.returncode not in QPDF_OK_CODES or not os.path.exists(decrypted_path):
            logger.info("qpdf exited with %s: %s", proc.returncode, detail)
            if "password" in detail.lower():
                raise IncorrectPasswordError("Failed to decrypt PDF. Please check the password.")
            raise DecryptionToolError(f"Failed to decrypt PDF (qpdf exit {proc.returncode}): {detail}")

        with open(decrypted_path, "rb") as f:
            return f.read()


def _is_password_error(exc: BaseException) -> bool:
    seen: Optional[BaseException] = exc
    while seen is not None:
        if isinstance(seen, PDFPasswordIncorrect):
            return True
        if any(isinstance(arg, PDFPasswordIncorrect) for arg in getattr(seen, "args", ())):
            return True
        if "password" in repr(seen).lower():
            return True
        seen = seen.__cause__ or seen.__context__
    return False


def read_pdf_pages(pdf_bytes: bytes) -> List[str]:
    pages: List[str] = []
    with pdfplumber.open(io.BytesIO(pdf_bytes)) as pdf:
        for page in pdf.pages:
            pages.append(page.extract_text() or "")
    return pages


async def extract_text(pdf_bytes: bytes, min_length: Optional[int] = None) -> str:
    min_length = config.MIN_TEXT_LENGTH if min_length is None else min_length
    try:
        pages = await asyncio.to_thread(read_pdf_pages, pdf_bytes)
    except Exception as exc:
        if _is_password_error(exc):
            raise PasswordRequiredError("PDF may be password protected") from exc
        raise TextExtractionError(f"Failed to parse PDF: {exc}") from exc

    text = "\n".join(pages)
    if len(text.strip()) < min_length:
        raise ImageBasedPdfError("Could not extract text from PDF. The file may be an image-based PDF.")
    return text


async def load_statement_text(pdf_bytes: bytes, password: Optional[str] = None) -> str:
    """Decrypt (when a password is given) and return the statement's plain text."""
    if password:
        pdf_bytes = await decrypt_pdf(pdf_bytes, password)
    return await extract_text(pdf_bytes)
