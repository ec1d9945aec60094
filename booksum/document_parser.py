"""Plain text extraction from PDF, EPUB, FB2 and text files."""

import io
import logging
import os
import tempfile
import zipfile

import ebooklib
from bs4 import BeautifulSoup
from ebooklib import epub
from pypdf import PasswordType, PdfReader
from pypdf.errors import DependencyError, PdfReadError

from booksum.errors import ParseError

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = (".pdf", ".epub", ".fb2", ".xml", ".txt", ".md")


def get_text_from_html(html_content):
    """Extracts plain text from HTML content."""
    soup = BeautifulSoup(html_content, 'html.parser')
    return soup.get_text(separator='\n\n', strip=True)


def file_extension(filename):
    return os.path.splitext(filename)[1].lower()


def parse_pdf(data):
    reader = PdfReader(io.BytesIO(data))
    if reader.is_encrypted:
        try:
            decrypted = reader.decrypt("")
        except (DependencyError, NotImplementedError) as e:
            raise ParseError(f"PDF uses unsupported encryption: {e}", phase="PARSING") from e
        if decrypted == PasswordType.NOT_DECRYPTED:
            raise ParseError("PDF is encrypted and cannot be read without a password", phase="PARSING")
        logger.info("PDF was encrypted; opened with an empty password.")

    pages = []
    for page in reader.pages:
        pages.append(page.extract_text() or "")
    return "\n\n".join(pages)


def parse_epub(data):
    # ebooklib reads from a path, so the bytes go through a temporary file.
    fd, tmp_path = tempfile.mkstemp(suffix=".epub")
    try:
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
        book = epub.read_epub(tmp_path, {"ignore_ncx": True})
    finally:
        os.unlink(tmp_path)
    return extract_epub_text(book)


def extract_epub_text(book):
    """Text of all document items, in spine (reading) order first, then any leftovers."""
    documents = {item.get_id(): item for item in book.get_items_of_type(ebooklib.ITEM_DOCUMENT)}
    ordered_ids = [item_id for item_id, _ in book.spine if item_id in documents]
    ordered_ids += [item_id for item_id in documents if item_id not in ordered_ids]

    parts = []
    for item_id in ordered_ids:
        text = get_text_from_html(documents[item_id].get_content())
        if text:
            parts.append(text)
    return "\n\n".join(parts)


def parse_fb2(data):
    soup = BeautifulSoup(data, 'html.parser')
    bodies = soup.find_all('body')
    return "\n\n".join(body.get_text(separator='\n', strip=True) for body in bodies)


def parse_plain_text(data):
    return data.decode('utf-8-sig')


def parse_document(data, filename):
    """
    Extracts plain text from a document's bytes. The format is picked from the
    file extension; unknown extensions are read as UTF-8 text.

    Raises ParseError when the file cannot be read.
    """
    extension = file_extension(filename)
    try:
        if extension == ".pdf":
            return parse_pdf(data)
        if extension == ".epub":
            return parse_epub(data)
        if extension in (".fb2", ".xml"):
            return parse_fb2(data)
        return parse_plain_text(data)
    except ParseError:
        raise
    except (PdfReadError, epub.EpubException, zipfile.BadZipFile, KeyError, ValueError, OSError) as e:
        fmt = extension.lstrip(".").upper() or "TEXT"
        raise ParseError(f"Failed to parse {fmt} file '{filename}': {e}", phase="PARSING") from e


def parse_file(file_path):
    """Reads a document from disk and extracts its text."""
    with open(file_path, 'rb') as f:
        data = f.read()
    return parse_document(data, os.path.basename(file_path))
