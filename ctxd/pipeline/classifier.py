"""
Intent Classifier

Two paths share one output schema:

- ``RuleBasedClassifier``: a pure function of prompt text and file set,
  driven by the versioned table in ``rules.py``. Always available.
- An optional ``InferenceBackend`` (local or remote model), called off the
  capture path with a bounded timeout. On timeout, error or an unusable
  answer the rule result is recorded with its confidence discounted.
"""

import asyncio
import logging
import re
from typing import List, Optional, Protocol, Sequence, Tuple

from ..common.errors import InferenceFailure
from ..common.schemas.interaction import InferredIntent, IntentCategory, IntentSource, Interaction
from ..common.text import path_tokens, tokenize, truncate
from .rules import (
    ALTERNATIVE_PATTERNS,
    CONCEPT_VOCABULARY,
    DEFAULT_CATEGORY,
    FILE_RULES,
    INTENT_RULES,
    PROBLEM_PATTERNS,
    RULES_VERSION,
    SOLUTION_CHARS,
    FileRule,
    IntentRule,
)

logger = logging.getLogger("ctxd.pipeline.classifier")


class InferenceBackend(Protocol):
    """Stateless intent inference. Raises InferenceFailure on unusable output."""

    def infer(self, prompt: str, files: Sequence[str], diff: Optional[str]) -> InferredIntent:
        ...


class RuleBasedClassifier:
    """Deterministic keyword classifier"""

    def __init__(
        self,
        rules: Sequence[IntentRule] = INTENT_RULES,
        file_rules: Sequence[FileRule] = FILE_RULES,
        vocabulary=CONCEPT_VOCABULARY,
        confidence: float = 0.7,
        version: str = RULES_VERSION,
    ):
        self._rules = [(rule, rule.compiled()) for rule in rules]
        self._file_rules = [
            (rule, [re.compile(p, re.IGNORECASE) for p in rule.patterns]) for rule in file_rules
        ]
        self._vocabulary = {name: set(forms) for name, forms in vocabulary.items()}
        self._problem_res = [re.compile(p, re.IGNORECASE) for p in PROBLEM_PATTERNS]
        self._alternative_res = [re.compile(p, re.IGNORECASE) for p in ALTERNATIVE_PATTERNS]
        self.confidence = confidence
        self.version = version

    def match_category(self, text: str, files: Sequence[str]) -> Tuple[IntentCategory, str]:
        """First matching rule wins. Returns (category, rule name)."""
        for rule, patterns in self._rules:
            if any(p.search(text) for p in patterns):
                return rule.category, rule.name
        if files:
            for rule, patterns in self._file_rules:
                if all(any(p.search(f) for p in patterns) for f in files):
                    return rule.category, rule.name
        return DEFAULT_CATEGORY, "default"

    def extract_concepts(self, text: str, files: Sequence[str]) -> List[str]:
        tokens = set(tokenize(text))
        for path in files:
            tokens |= path_tokens(path)
        return sorted(name for name, forms in self._vocabulary.items() if tokens & forms)

    def extract_problem(self, text: str) -> Optional[str]:
        for pattern in self._problem_res:
            match = pattern.search(text)
            if match:
                return match.group(1).strip()
        return None

    def extract_alternatives(self, text: str) -> List[str]:
        alternatives: List[str] = []
        for pattern in self._alternative_res:
            for match in pattern.findall(text):
                value = match.strip()
                if len(value) > 2 and value not in alternatives:
                    alternatives.append(value)
        return alternatives[:5]

    @staticmethod
    def summarize(text: str) -> str:
        """First sentence or line of the prompt, capped"""
        first = re.split(r"(?<=[.!?])\s+|\n", text.strip(), maxsplit=1)[0]
        return truncate(first.strip(), SOLUTION_CHARS)

    def classify(self, interaction: Interaction) -> InferredIntent:
        text = interaction.prompt or ""
        category, rule_name = self.match_category(text, interaction.files)
        logger.debug("%s matched rule %s", interaction.id, rule_name)
        return InferredIntent(
            category=category,
            confidence=self.confidence,
            problem=self.extract_problem(text),
            solution=self.summarize(text),
            alternatives=self.extract_alternatives(text),
            concepts=self.extract_concepts(text, interaction.files),
            source=IntentSource.RULE,
            rules_version=self.version,
        )


class IntentClassifier:
    """Rule path plus optional backend with timeout and discounted fallback"""

    def __init__(
        self,
        rules: Optional[RuleBasedClassifier] = None,
        backend: Optional[InferenceBackend] = None,
        timeout: float = 10.0,
        fallback_discount: float = 0.2,
        min_confidence: float = 0.5,
    ):
        self.rules = rules or RuleBasedClassifier()
        self.backend = backend
        self.timeout = timeout
        self.fallback_discount = fallback_discount
        self.min_confidence = min_confidence
        self.fallbacks = 0

    def classify(self, interaction: Interaction) -> InferredIntent:
        """Deterministic rule-based classification"""
        return self.rules.classify(interaction)

    def fallback(self, interaction: Interaction) -> InferredIntent:
        intent = self.rules.classify(interaction)
        return intent.model_copy(update={
            "confidence": max(0.0, round(intent.confidence - self.fallback_discount, 4)),
            "source": IntentSource.FALLBACK,
        })

    async def classify_async(self, interaction: Interaction) -> InferredIntent:
        """Backend classification with bounded timeout; never raises"""
        if self.backend is None:
            return self.classify(interaction)

        try:
            intent = await asyncio.wait_for(
                asyncio.to_thread(self.backend.infer, interaction.prompt, list(interaction.files), None),
                timeout=self.timeout,
            )
            if not isinstance(intent, InferredIntent):
                raise InferenceFailure(f"backend returned {type(intent).__name__}")
            if intent.confidence < self.min_confidence:
                raise InferenceFailure(f"backend confidence {intent.confidence:.2f} below minimum")
        except asyncio.TimeoutError:
            self.fallbacks += 1
            logger.warning("Inference timed out after %.1fs for %s; using rules", self.timeout, interaction.id)
            return self.fallback(interaction)
        except Exception as e:
            self.fallbacks += 1
            logger.warning("Inference failed for %s: %s; using rules", interaction.id, e)
            return self.fallback(interaction)

        return intent.model_copy(update={"source": IntentSource.BACKEND})
