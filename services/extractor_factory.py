# services/extractor_factory.py
"""Factory mapping content categories to extractors"""
import logging
from typing import Dict, Type

from config import settings
from core.enums import DocumentType
from core.errors import UnsupportedDocumentTypeError
from core.interfaces import IContentExtractor
from infrastructure.extractors import (
    CodeExtractor, JsonExtractor, MarkdownExtractor, PdfExtractor,
    PlainTextExtractor, YamlExtractor
)

logger = logging.getLogger(settings.LOGGER_NAME)


class ExtractorFactory:
    """
    Creates the extractor for a detected document type.
    Categories without a registered extractor (html, docx) are rejected.
    """

    def __init__(self):
        self._extractors: Dict[DocumentType, Type[IContentExtractor]] = {
            DocumentType.MARKDOWN: MarkdownExtractor,
            DocumentType.PLAINTEXT: PlainTextExtractor,
            DocumentType.CODE: CodeExtractor,
            DocumentType.JSON: JsonExtractor,
            DocumentType.YAML: YamlExtractor,
            DocumentType.PDF: PdfExtractor,
        }

    def register(self, document_type: DocumentType, extractor_class: Type[IContentExtractor]) -> None:
        """Add or replace the extractor for a category."""
        self._extractors[document_type] = extractor_class

    def supports(self, document_type: DocumentType) -> bool:
        return document_type in self._extractors

    def get_extractor(self, document_type: DocumentType) -> IContentExtractor:
        extractor_class = self._extractors.get(document_type)
        if not extractor_class:
            available = ", ".join(t.value for t in self._extractors)
            raise UnsupportedDocumentTypeError(
                f"No extractor for '{document_type.value}'. Available: {available}"
            )
        return extractor_class()
