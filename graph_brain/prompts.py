from typing import Dict, List, Optional


RAG_PROMPT_KIND = "rag"
EXTRACT_PROMPT_KIND = "extract"

DEFAULT_RAG_PROMPT = (
    "You are an intelligent assistant with access to the following knowledge "
    "graph. Use it to answer the question."
)

DEFAULT_EXTRACT_PROMPT = (
    "You are a precise graph relationship extractor. Extract all relationships "
    "from the text and format them as a JSON object with this exact structure:\n"
    "{\n"
    '  "graph": [\n'
    '    {"node": "Person/Entity", "target_node": "Related Entity", '
    '"relationship": "Type of Relationship"}\n'
    "  ]\n"
    "}\n"
    "Include ALL relationships mentioned in the text, including implicit ones. "
    "Be thorough and precise."
)


class PromptRegistry:
    """
    In-memory ``kind -> prompt template`` store for operator-tuned prompts.

    Nothing is persisted; a new process starts empty and falls back to the
    built-in defaults. Last write wins.
    """

    def __init__(self, prompts: Optional[Dict[str, str]] = None):
        self._prompts: Dict[str, str] = dict(prompts or {})

    def set(self, kind: str, prompt: str) -> None:
        self._prompts[kind] = prompt

    def get(self, kind: str, default: Optional[str] = None) -> Optional[str]:
        return self._prompts.get(kind, default)

    def list(self) -> List[Dict[str, str]]:
        return [{"kind": kind, "prompt": prompt} for kind, prompt in self._prompts.items()]

    def delete(self, kind: str) -> bool:
        """Return True if a prompt was registered for ``kind``."""
        return self._prompts.pop(kind, None) is not None


__all__ = [
    "DEFAULT_EXTRACT_PROMPT",
    "DEFAULT_RAG_PROMPT",
    "EXTRACT_PROMPT_KIND",
    "PromptRegistry",
    "RAG_PROMPT_KIND",
]
