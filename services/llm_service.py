# services/llm_service.py
import asyncio
import json
import logging
import re
from typing import Any, Dict, List

import requests

from config import settings
from core.domain import EntityReference
from core.enums import EntityType
from core.interfaces import ILLMAdapter
from services.chunker import detect_semantic_flags
from services.text_analysis import (
    extract_entities, heuristic_questions, summarize, summarize_change
)

logger = logging.getLogger(settings.LOGGER_NAME)

# Input caps per task (characters)
SUMMARY_INPUT_CHARS = 8000
QUESTIONS_INPUT_CHARS = 4000
ENTITIES_INPUT_CHARS = 6000
FLAGS_INPUT_CHARS = 2000
CHANGE_INPUT_CHARS = 3000
# Shorter texts are classified with regexes only
FLAGS_MIN_LLM_CHARS = 500


class HeuristicLLMAdapter(ILLMAdapter):
    """Offline stand-in for a language model: regexes and templates only."""

    async def generate_summary(self, text: str, max_length: int = 200) -> str:
        return summarize(text, max_length)

    async def generate_questions(self, text: str, count: int = 3) -> List[str]:
        return heuristic_questions(text, count)

    async def extract_entities(self, text: str) -> List[EntityReference]:
        return extract_entities(text)

    async def detect_semantic_flags(self, text: str) -> Dict[str, bool]:
        return detect_semantic_flags(text)

    @property
    def supports_change_summary(self) -> bool:
        return True

    async def generate_change_summary(self, old_content: str, new_content: str) -> str:
        return summarize_change(old_content, new_content)


class OllamaLLMAdapter(ILLMAdapter):
    """
    Language-model helpers backed by a local Ollama server.

    Every call degrades to HeuristicLLMAdapter when the server is unreachable
    or returns something unparsable, so indexing never fails on the model.
    """

    def __init__(self, base_url: str, model: str, timeout: int = settings.REQUEST_TIMEOUT):
        """
        Args:
            base_url: The base URL of the Ollama API.
            model: The name of the model to use.
            timeout: The request timeout in seconds.
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.fallback = HeuristicLLMAdapter()

    def chat(self, prompt: str, json_output: bool = False, max_tokens: int = 256) -> Dict[str, Any]:
        """
        Sends a prompt to the LLM and returns {"answer": ..., "status": "success"}
        or {"error": ..., "status": "error"}.
        """
        if not prompt or not prompt.strip():
            logger.warning("LLM chat called with an empty prompt.")
            return {"error": "Empty prompt provided", "status": "error"}

        payload: Dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"num_predict": max_tokens},
        }
        if json_output:
            payload["format"] = "json"

        try:
            logger.debug(f"Sending prompt to LLM model '{self.model}'...")
            response = requests.post(f"{self.base_url}/api/generate", json=payload, timeout=self.timeout)
            response.raise_for_status()

            result = response.json()
            if result.get("response"):
                return {"answer": result["response"].strip(), "status": "success"}
            logger.error("LLM response was empty or malformed.")
            return {"error": "Empty response from LLM", "status": "error"}

        except requests.exceptions.Timeout:
            logger.error(f"LLM request timed out after {self.timeout} seconds.")
            return {"error": "LLM request timed out", "status": "error"}
        except requests.exceptions.ConnectionError:
            logger.error(f"Cannot connect to LLM at {self.base_url}. Is the service running?")
            return {"error": "Cannot connect to LLM service", "status": "error"}
        except requests.exceptions.HTTPError as e:
            logger.error(f"LLM service returned an error: {e.response.status_code} {e.response.text}")
            return {"error": f"LLM error: {e.response.status_code}", "status": "error"}
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"An unexpected error occurred in OllamaLLMAdapter: {e}", exc_info=True)
            return {"error": str(e), "status": "error"}

    async def _ask(self, prompt: str, json_output: bool = False, max_tokens: int = 256) -> Dict[str, Any]:
        return await asyncio.to_thread(self.chat, prompt, json_output, max_tokens)

    # ============= ILLMAdapter =============

    async def generate_summary(self, text: str, max_length: int = 200) -> str:
        prompt = (
            f"Summarize the following text in {max(1, max_length // 4)} words or less. "
            f"Be concise and capture the main points.\n\n{text[:SUMMARY_INPUT_CHARS]}"
        )
        result = await self._ask(prompt, max_tokens=max(16, max_length // 2))
        if result["status"] != "success":
            logger.warning(f"Summary generation failed, using first paragraph: {result['error']}")
            return await self.fallback.generate_summary(text, max_length)
        summary = result["answer"]
        return summary if len(summary) <= max_length else summary[:max_length].rstrip() + "..."

    async def generate_questions(self, text: str, count: int = 3) -> List[str]:
        prompt = (
            f"Generate {count} questions that someone might ask that this text would answer. "
            f"Return only the questions, one per line, no numbering or bullets.\n\n"
            f"{text[:QUESTIONS_INPUT_CHARS]}"
        )
        result = await self._ask(prompt, max_tokens=200)
        if result["status"] != "success":
            logger.warning(f"Question generation failed, using templates: {result['error']}")
            return await self.fallback.generate_questions(text, count)

        questions = [
            re.sub(r"^\s*(?:\d+[.)]|[-*])\s*", "", line).strip()
            for line in result["answer"].splitlines()
        ]
        questions = [q for q in questions if q.endswith("?")][:count]
        return questions or ["What is this about?"]

    async def extract_entities(self, text: str) -> List[EntityReference]:
        prompt = (
            "Extract named entities from the text. Return a JSON object "
            '{"entities": [{"type": ..., "name": ..., "mentions": ...}]} where type is one of '
            '"person", "company", "concept", "technology", "place" and mentions counts '
            "occurrences. Only include entities mentioned explicitly.\n\n"
            f"{text[:ENTITIES_INPUT_CHARS]}"
        )
        result = await self._ask(prompt, json_output=True, max_tokens=500)
        if result["status"] == "success":
            try:
                return self._parse_entities(result["answer"])
            except (ValueError, TypeError, KeyError) as e:
                logger.warning(f"Unparsable entity response: {e}")
        return await self.fallback.extract_entities(text)

    async def detect_semantic_flags(self, text: str) -> Dict[str, bool]:
        if len(text) < FLAGS_MIN_LLM_CHARS:
            return detect_semantic_flags(text)

        prompt = (
            "Analyze this text and determine if it contains: 1. a DECISION that was made, "
            "2. a QUESTION, 3. an ACTION ITEM. Return JSON only: "
            '{"is_decision": boolean, "is_question": boolean, "is_action": boolean}\n\n'
            f"{text[:FLAGS_INPUT_CHARS]}"
        )
        result = await self._ask(prompt, json_output=True, max_tokens=50)
        if result["status"] == "success":
            try:
                flags = json.loads(result["answer"])
                return {key: bool(flags.get(key)) for key in ("is_decision", "is_question", "is_action")}
            except (ValueError, AttributeError) as e:
                logger.warning(f"Unparsable flag response: {e}")
        return detect_semantic_flags(text)

    @property
    def supports_change_summary(self) -> bool:
        return True

    async def generate_change_summary(self, old_content: str, new_content: str) -> str:
        prompt = (
            "Compare the old and new versions of this text and describe what changed "
            f"in one sentence.\n\nOLD VERSION:\n{old_content[:CHANGE_INPUT_CHARS]}\n\n"
            f"NEW VERSION:\n{new_content[:CHANGE_INPUT_CHARS]}"
        )
        result = await self._ask(prompt, max_tokens=100)
        if result["status"] != "success":
            return summarize_change(old_content, new_content)
        return result["answer"]

    @staticmethod
    def _parse_entities(answer: str) -> List[EntityReference]:
        parsed = json.loads(answer)
        items = parsed.get("entities", []) if isinstance(parsed, dict) else parsed
        entities = []
        for item in items:
            try:
                entity_type = EntityType(str(item["type"]).lower())
            except ValueError:
                entity_type = EntityType.CONCEPT
            entities.append(EntityReference(
                type=entity_type,
                name=str(item["name"]).strip(),
                mentions=int(item.get("mentions") or 1),
            ))
        return [e for e in entities if e.name]
