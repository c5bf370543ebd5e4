"""
Intent rule table.

The deterministic classifier is driven entirely by the data in this module.
Rules are evaluated in order and the first match wins, so reordering rules
changes behaviour; bump ``RULES_VERSION`` whenever the table changes. Every
InferredIntent records the version that produced it.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Pattern, Tuple

from ..common.schemas.interaction import IntentCategory

RULES_VERSION = "2026.1"


@dataclass(frozen=True)
class IntentRule:
    """Keyword patterns (matched against prompt text) mapping to a category"""
    name: str
    category: IntentCategory
    patterns: Tuple[str, ...]

    def compiled(self) -> List[Pattern]:
        return [re.compile(p, re.IGNORECASE) for p in self.patterns]


@dataclass(frozen=True)
class FileRule:
    """Applies when no text rule matched and every touched file matches"""
    name: str
    category: IntentCategory
    patterns: Tuple[str, ...]


INTENT_RULES: Tuple[IntentRule, ...] = (
    IntentRule("bugfix", IntentCategory.BUGFIX, (
        r"\bfix(?:es|ed|ing)?\b", r"\bbugs?\b", r"\bcrash(?:es|ed|ing)?\b",
        r"\bbroken\b", r"\bregression\b", r"\bhotfix\b",
    )),
    IntentRule("refactor", IntentCategory.REFACTOR, (
        r"\brefactor", r"\bclean\s?up\b", r"\brestructur", r"\bsimplif(?:y|ied|ies)\b",
    )),
    IntentRule("performance", IntentCategory.PERFORMANCE, (
        r"\bperf\b", r"\bperformance\b", r"\boptimi[sz]", r"\bfast(?:er)?\b",
        r"\bslow(?:er|ness)?\b", r"\blatency\b", r"\bthroughput\b",
    )),
    IntentRule("security", IntentCategory.SECURITY, (
        r"\bsecur", r"\bauth(?:entication|orization)?\b", r"\bvulnerab",
        r"\bxss\b", r"\bcsrf\b", r"\bsanitiz", r"\bencrypt",
    )),
    IntentRule("docs", IntentCategory.DOCS, (
        r"\bdoc(?:s|ument|umentation)?\b", r"\bcomments?\b", r"\breadme\b", r"\bdocstrings?\b",
    )),
    IntentRule("test", IntentCategory.TEST, (
        r"\btests?\b", r"\btesting\b", r"\bunit\s+tests?\b", r"\bcoverage\b",
    )),
)

FILE_RULES: Tuple[FileRule, ...] = (
    FileRule("test-files", IntentCategory.TEST, (
        r"(?:^|/)tests?/", r"(?:^|/)test_[^/]+$", r"_test\.\w+$", r"\.(?:test|spec)\.\w+$",
    )),
    FileRule("doc-files", IntentCategory.DOCS, (
        r"\.(?:md|rst|adoc|txt)$", r"(?:^|/)docs?/",
    )),
)

DEFAULT_CATEGORY = IntentCategory.FEATURE

# Concept name -> surface forms that signal it (already normalized tokens)
CONCEPT_VOCABULARY: Dict[str, Tuple[str, ...]] = {
    "api": ("api", "endpoint", "rest", "graphql", "route"),
    "auth": ("auth", "authentication", "authorization", "oauth", "jwt", "permission"),
    "cache": ("cache", "caching", "cached", "memoize"),
    "config": ("config", "configuration", "setting", "env"),
    "database": ("database", "db", "sql", "postgres", "mysql", "sqlite", "migration", "schema", "query"),
    "login": ("login", "logout", "signin", "signup", "sso"),
    "payment": ("payment", "billing", "invoice", "stripe", "checkout"),
    "performance": ("performance", "perf", "latency", "throughput", "optimize", "optimization"),
    "queue": ("queue", "worker", "job", "kafka", "rabbitmq", "celery"),
    "redis": ("redis",),
    "security": ("security", "secure", "vulnerability", "xss", "csrf", "encryption"),
    "session": ("session",),
    "test": ("test", "testing", "spec", "coverage"),
    "ui": ("ui", "component", "view", "css", "layout", "frontend", "button", "form"),
    "user": ("user", "account", "profile"),
}

PROBLEM_PATTERNS: Tuple[str, ...] = (
    r"(?:problem|issue|challenge|bug)s?[:\s]+(.{5,200}?)(?:[.!?\n]|$)",
    r"(?:because|since|due to)\s+(.{5,200}?)(?:[,.!?\n]|$)",
)

ALTERNATIVE_PATTERNS: Tuple[str, ...] = (
    r"(?:alternatives?|options?|considered)[:\s]+(.{5,200}?)(?:[.!?\n]|$)",
    r"(?:instead of|rather than|versus|vs\.?)\s+(\w+(?:[\s-]+\w+){0,3})",
)

SOLUTION_CHARS = 100
