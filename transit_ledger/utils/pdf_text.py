"""
PDF text extraction shared by the invoice parser and the document store.
"""

import io
from typing import List

import pdfplumber

from ..errors import MalformedInput
from .logging_config import get_logger

logger = get_logger(__name__)


def extract_pdf_text(file_bytes: bytes) -> str:
    """
    Extract the text of every page, pages separated by newlines.

    Raises:
        MalformedInput: If the bytes are not a readable PDF
    """
    pages_text: List[str] = []
    try:
        with pdfplumber.open(io.BytesIO(file_bytes)) as pdf:
            for page in pdf.pages:
                pages_text.append(page.extract_text() or '')
    except Exception as e:
        logger.error(f'Failed to read PDF: {e}')
        raise MalformedInput(f'Unreadable PDF: {e}')
    return '\n'.join(pages_text)
