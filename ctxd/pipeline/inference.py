"""
LLM inference backend.

Asks a small model to classify one Interaction. The answer must match the
InferredIntent schema; anything else is an InferenceFailure and the
classifier falls back to the rule table.

Token budget: ~400 tokens per call (policy + prompt + file list + response).
"""

import logging
from typing import Optional, Sequence

from pydantic import ValidationError

from ..common.errors import InferenceFailure
from ..common.llm_client import LLMClient
from ..common.llm_utils import as_str_list, parse_llm_json
from ..common.schemas.interaction import InferredIntent, IntentCategory, IntentSource

logger = logging.getLogger("ctxd.pipeline.inference")

CATEGORIES = "|".join(c.value for c in IntentCategory)

INFERENCE_POLICY = f"""You analyze a prompt a developer gave an AI coding assistant, together with the files that changed, and explain why the code changed.

Classify the intent:
- feature: new capability
- bugfix: corrects wrong behaviour
- refactor: restructures without changing behaviour
- performance: makes something faster or cheaper
- security: hardens, authenticates, sanitizes
- docs: documentation or comments only
- test: tests only

Extract short lowercase concept keywords (technologies, subsystems, domain nouns).
Be conservative with confidence: use >= 0.8 only when the intent is explicit.

Respond with JSON only:
{{"category": "{CATEGORIES}", "confidence": 0.0-1.0, "problem": "one sentence or null", "solution": "one sentence", "alternatives": ["..."], "concepts": ["..."]}}"""

MAX_PROMPT_CHARS = 1500
MAX_FILES = 30


class LLMInferenceBackend:
    """InferenceBackend backed by LLMClient"""

    def __init__(self, llm_client: LLMClient, timeout: float = 10.0, max_tokens: int = 300):
        self._llm = llm_client
        self._timeout = timeout
        self._max_tokens = max_tokens

    @property
    def is_available(self) -> bool:
        return self._llm.is_available

    def build_prompt(self, prompt: str, files: Sequence[str], diff: Optional[str]) -> str:
        parts = [f"Prompt: {prompt[:MAX_PROMPT_CHARS]}"]
        if files:
            listed = "\n".join(f"- {f}" for f in list(files)[:MAX_FILES])
            parts.append(f"Changed files:\n{listed}")
        if diff:
            parts.append(f"Diff excerpt:\n{diff[:1000]}")
        return "\n\n".join(parts)

    def infer(self, prompt: str, files: Sequence[str], diff: Optional[str] = None) -> InferredIntent:
        if not self.is_available:
            raise InferenceFailure("LLM client unavailable")
        try:
            raw = self._llm.generate(
                self.build_prompt(prompt, files, diff),
                system=INFERENCE_POLICY,
                max_tokens=self._max_tokens,
                timeout=self._timeout,
            )
        except Exception as e:
            raise InferenceFailure(f"LLM call failed: {e}") from e
        return self.parse_response(raw)

    def parse_response(self, raw: str) -> InferredIntent:
        data = parse_llm_json(raw)
        if not data:
            raise InferenceFailure("LLM response was not a JSON object")

        category = str(data.get("category", "")).strip().lower()
        try:
            confidence = float(data.get("confidence", 0.0))
        except (TypeError, ValueError):
            raise InferenceFailure(f"invalid confidence {data.get('confidence')!r}")

        try:
            return InferredIntent(
                category=category,
                confidence=min(1.0, max(0.0, confidence)),
                problem=(data.get("problem") or None),
                solution=str(data.get("solution") or "").strip(),
                alternatives=as_str_list(data.get("alternatives"), limit=5),
                concepts=as_str_list(data.get("concepts"), limit=12),
                source=IntentSource.BACKEND,
            )
        except ValidationError as e:
            raise InferenceFailure(f"LLM response failed validation: {e}") from e


def build_backend(llm_client: Optional[LLMClient], timeout: float) -> Optional[LLMInferenceBackend]:
    """Backend for a configured client, or None when rules only"""
    if llm_client is None or not llm_client.is_available:
        return None
    return LLMInferenceBackend(llm_client, timeout=timeout)
