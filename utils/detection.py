# utils/detection.py
"""Filename-based document type detection"""
from typing import Dict, Optional

from core.enums import DocumentType
from utils.common import get_file_extension, get_file_name

EXTENSION_TYPES: Dict[str, DocumentType] = {
    # Markdown
    "md": DocumentType.MARKDOWN, "markdown": DocumentType.MARKDOWN, "mdx": DocumentType.MARKDOWN,
    # Plain text
    "txt": DocumentType.PLAINTEXT, "text": DocumentType.PLAINTEXT,
    "log": DocumentType.PLAINTEXT, "rst": DocumentType.PLAINTEXT,
    # Structured data
    "json": DocumentType.JSON, "jsonc": DocumentType.JSON,
    "yaml": DocumentType.YAML, "yml": DocumentType.YAML,
    # Rich documents
    "html": DocumentType.HTML, "htm": DocumentType.HTML,
    "pdf": DocumentType.PDF,
    "docx": DocumentType.DOCX, "doc": DocumentType.DOCX,
}

CODE_LANGUAGES: Dict[str, str] = {
    "ts": "typescript", "tsx": "typescript",
    "js": "javascript", "jsx": "javascript", "mjs": "javascript", "cjs": "javascript",
    "py": "python",
    "go": "go",
    "rs": "rust",
    "java": "java",
    "c": "c", "h": "c",
    "cpp": "cpp", "hpp": "cpp", "cc": "cpp",
    "cs": "csharp",
    "rb": "ruby",
    "php": "php",
    "swift": "swift",
    "kt": "kotlin",
    "scala": "scala",
    "sh": "shell", "bash": "shell", "zsh": "shell",
    "sql": "sql",
    "css": "css", "scss": "scss", "less": "less",
    "vue": "vue",
    "svelte": "svelte",
}


def detect_document_type(filename: str) -> DocumentType:
    """Content category for a filename, decided by its extension alone."""
    extension = get_file_extension(get_file_name(filename))
    if not extension:
        return DocumentType.UNSUPPORTED
    if extension in CODE_LANGUAGES:
        return DocumentType.CODE
    return EXTENSION_TYPES.get(extension, DocumentType.UNSUPPORTED)


def get_code_language(filename: str) -> Optional[str]:
    return CODE_LANGUAGES.get(get_file_extension(get_file_name(filename)))


def is_supported(filename: str) -> bool:
    return detect_document_type(filename) != DocumentType.UNSUPPORTED
