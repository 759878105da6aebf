# services/text_analysis.py
"""Heuristic text analysis used when no language model is configured"""
import re
from collections import Counter
from typing import Dict, List

from core.domain import EntityReference, ExplicitLink
from core.enums import EntityType, LinkType

SUMMARY_MAX_LENGTH = 200
MAX_TOPICS = 10
MAX_KEY_TERMS = 20
CONTEXT_CHARS = 50

STOP_WORDS = {
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "as", "is", "was", "are", "were", "been",
    "be", "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "shall", "can", "this", "that", "these",
    "those", "it", "its", "they", "them", "their", "we", "us", "our", "you",
    "your", "he", "she", "him", "her", "his", "hers", "there", "then", "than",
    "what", "when", "where", "which", "while", "about", "into", "also", "just",
}

PERSON_PATTERN = re.compile(r"(?:^|[.!?][ \t]+|\n)[ \t]*([A-Z][a-z]+(?:[ \t]+[A-Z][a-z]+)+)\b", re.MULTILINE)
COMPANY_PATTERN = re.compile(r"\b([A-Z][a-zA-Z]*(?:[ \t]+[A-Z][a-zA-Z]*)*)[ \t]+(?:Inc|LLC|Corp|Ltd|Co)\b")
TECH_PATTERN = re.compile(
    r"\b(React|Vue|Angular|Node\.?js|TypeScript|JavaScript|Python|Go|Rust|Docker|"
    r"Kubernetes|AWS|GCP|Azure|PostgreSQL|MongoDB|Redis)\b"
)
CONCEPT_PATTERN = re.compile(r"\"([^\"\n]+)\"|'([^'\n]+)'|\*\*([^*\n]+)\*\*")

URL_PATTERN = re.compile(r"https?://[^\s<>\"{}|\\^`\[\]]+")
FILE_PATTERN = re.compile(r"(?:\./|\.\./|/)?[\w-]+(?:/[\w-]+)*\.\w{2,4}\b")
MENTION_PATTERN = re.compile(r"(?<![\w@#])[@#][\w-]+")

HEADING_PATTERN = re.compile(r"^#{1,6}\s+(.+)$", re.MULTILINE)
BOLD_PATTERN = re.compile(r"\*\*([^*]+)\*\*")

QUESTION_TEMPLATES = [
    (re.compile(r"decision|decided|chose", re.IGNORECASE), "What decisions were made?"),
    (re.compile(r"how|process|step", re.IGNORECASE), "How does this work?"),
    (re.compile(r"why|reason|because", re.IGNORECASE), "Why was this approach chosen?"),
    (re.compile(r"what|define|mean", re.IGNORECASE), "What does this mean?"),
    (re.compile(r"when|date|deadline", re.IGNORECASE), "When does this happen?"),
]


# ============= Entities =============

def _add_entity(entities: Dict[str, EntityReference], name: str, entity_type: EntityType,
                position: int) -> None:
    name = name.strip()
    key = name.lower()
    existing = entities.get(key)
    if existing:
        existing.mentions += 1
        existing.positions.append(position)
    else:
        entities[key] = EntityReference(type=entity_type, name=name, mentions=1, positions=[position])


def extract_entities(content: str) -> List[EntityReference]:
    """
    Pattern-based entity recognition.

    Capitalized multi-word runs at sentence starts are people, "<Name> Inc/LLC/..."
    are companies, a fixed vocabulary covers technologies and short quoted or
    bold phrases are concepts. Names are merged case-insensitively.
    """
    entities: Dict[str, EntityReference] = {}

    for match in PERSON_PATTERN.finditer(content):
        _add_entity(entities, match.group(1), EntityType.PERSON, match.start(1))
    for match in COMPANY_PATTERN.finditer(content):
        _add_entity(entities, match.group(1), EntityType.COMPANY, match.start(1))
    for match in TECH_PATTERN.finditer(content):
        _add_entity(entities, match.group(1), EntityType.TECHNOLOGY, match.start(1))
    for match in CONCEPT_PATTERN.finditer(content):
        concept = match.group(1) or match.group(2) or match.group(3)
        if concept and concept.strip() and len(concept.split()) <= 4:
            _add_entity(entities, concept, EntityType.CONCEPT, match.start())

    return list(entities.values())


# ============= Explicit links =============

def surrounding_context(content: str, position: int, length: int = CONTEXT_CHARS) -> str:
    start = max(0, position - length)
    end = min(len(content), position + length)
    return re.sub(r"\s+", " ", content[start:end]).strip()


def detect_explicit_links(content: str) -> List[ExplicitLink]:
    links: List[ExplicitLink] = []
    url_spans = []

    for match in URL_PATTERN.finditer(content):
        url_spans.append(match.span())
        links.append(ExplicitLink(type=LinkType.URL, target=match.group(0),
                                  context=surrounding_context(content, match.start()),
                                  position=match.start()))

    for match in FILE_PATTERN.finditer(content):
        inside_url = any(start <= match.start() < end for start, end in url_spans)
        if match.group(0).startswith("http") or inside_url:
            continue
        links.append(ExplicitLink(type=LinkType.FILE_REFERENCE, target=match.group(0),
                                  context=surrounding_context(content, match.start()),
                                  position=match.start()))

    for match in MENTION_PATTERN.finditer(content):
        links.append(ExplicitLink(type=LinkType.MENTION, target=match.group(0),
                                  context=surrounding_context(content, match.start()),
                                  position=match.start()))

    return links


# ============= Terms, topics, summaries =============

def extract_key_terms(content: str, limit: int = MAX_KEY_TERMS) -> List[str]:
    """Most frequent non-stop-words longer than three characters."""
    words = re.findall(r"[a-z0-9][a-z0-9_-]*", content.lower())
    counts = Counter(w for w in words if len(w) > 3 and w not in STOP_WORDS)
    return [term for term, _ in counts.most_common(limit)]


def extract_topics(content: str, limit: int = MAX_TOPICS) -> List[str]:
    """Markdown headings and bold terms, deduplicated in order of appearance."""
    candidates = [m.group(1).strip() for m in HEADING_PATTERN.finditer(content)]
    candidates += [m.group(1).strip() for m in BOLD_PATTERN.finditer(content)]

    topics: List[str] = []
    seen = set()
    for topic in candidates:
        if 3 < len(topic) < 50 and topic.lower() not in seen:
            seen.add(topic.lower())
            topics.append(topic)
        if len(topics) >= limit:
            break
    return topics


def summarize(text: str, max_length: int = SUMMARY_MAX_LENGTH) -> str:
    """First non-empty paragraph, truncated with an ellipsis."""
    paragraphs = [p.strip() for p in re.split(r"\n\s*\n", text) if p.strip()]
    if not paragraphs:
        return ""
    first = re.sub(r"\s+", " ", paragraphs[0])
    if len(first) <= max_length:
        return first
    return first[:max_length].rstrip() + "..."


def heuristic_questions(text: str, count: int = 3) -> List[str]:
    questions = [question for pattern, question in QUESTION_TEMPLATES if pattern.search(text)]
    return questions[:count] if questions else ["What is this about?"]


def summarize_change(old_content: str, new_content: str) -> str:
    """Line-level change description used when no language model is available."""
    old_lines = set(old_content.splitlines())
    new_lines = set(new_content.splitlines())
    added = len([line for line in new_lines - old_lines if line.strip()])
    removed = len([line for line in old_lines - new_lines if line.strip()])
    if not added and not removed:
        return "No content changes"
    return f"{added} line(s) added, {removed} line(s) removed"
