import json
import re
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Tuple

from openai import OpenAI

from ..utils.logger import app_logger

INTENTS = ("find_function", "find_class", "find_relations", "find_path", "stats", "unknown")

UNKNOWN_CONFIDENCE = 0.3
RULE_CONFIDENCE_CAP = 0.95
EXTRA_MATCH_BONUS = 0.05

# Evaluated in order; the first intent with any matching pattern wins
INTENT_RULES: List[Tuple[str, float, List[str]]] = [
    ("stats", 0.8, [
        r"\b(stats|statistics|summary|overview)\b",
        r"\bhow many\b",
        r"\b(count|number) of\b",
    ]),
    ("find_path", 0.75, [
        r"\bpaths?\b",
        r"\bbetween\b.+\band\b",
        r"\b(connects?|connected|reach(es)?|gets? from)\b.+\bto\b",
    ]),
    ("find_relations", 0.75, [
        r"\b(relations?|relationships?|related|dependencies|dependents)\b",
        r"\b(depends? on|calls?|called by|callers?|uses|used by|imports?|imported by)\b",
        r"\b(references?|referenced by|extends|implements|documents)\b",
    ]),
    ("find_class", 0.75, [
        r"\b(class|classes|interfaces?|structs?)\b",
        r"\b(models?|schemas?|entities|entity|types?)\b",
    ]),
    ("find_function", 0.75, [
        r"\b(functions?|methods?|func|def|procedures?)\b",
        r"\b(apis?|endpoints?|handlers?)\b",
        r"\bwhere is\b.+\bdefined\b",
    ]),
]

_COMPILED_RULES = [
    (intent, base, [re.compile(pattern, re.IGNORECASE) for pattern in patterns])
    for intent, base, patterns in INTENT_RULES
]


@dataclass
class IntentResult:
    """Classified intent with its confidence."""
    intent: str
    confidence: float
    source: str = "rules"
    matched: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "intent": self.intent,
            "confidence": self.confidence,
            "source": self.source,
            "matched": self.matched,
        }


class IntentClassifier:
    """Rule-based keyword and regex intent classification."""

    def classify(self, text: str) -> IntentResult:
        text = text or ""
        for intent, base, patterns in _COMPILED_RULES:
            matched = [m.group(0) for m in (p.search(text) for p in patterns) if m]
            if matched:
                confidence = min(RULE_CONFIDENCE_CAP, base + EXTRA_MATCH_BONUS * (len(matched) - 1))
                return IntentResult(intent=intent, confidence=round(confidence, 2), matched=matched)
        return IntentResult(intent="unknown", confidence=UNKNOWN_CONFIDENCE)


class IntentStrategy(ABC):
    """Fallback classifier consulted when the rules are inconclusive.

    Implementations must check ``cancel_event`` and give up once it is set; the
    engine sets it when the call exceeds its timeout.
    """

    @abstractmethod
    def classify(self, text: str, cancel_event: threading.Event) -> Optional[IntentResult]:
        """Return an intent, or None when no answer is available."""


class IntentClassificationCancelled(Exception):
    """Raised by a strategy that noticed its cancellation token."""


SYSTEM_PROMPT = (
    "You classify questions about a source code knowledge graph. Reply with a JSON object "
    '{"intent": <one of ' + ", ".join(INTENTS) + '>, "confidence": <number between 0 and 1>}. '
    "find_function: locate functions or methods. find_class: locate classes, interfaces or "
    "schemas. find_relations: what a thing depends on, calls, imports or is used by. "
    "find_path: how two things are connected. stats: counts and overviews. "
    "Use unknown when none fit."
)


class OpenAIIntentClassifier(IntentStrategy):
    """Intent classification through the OpenAI chat completions API."""

    def __init__(self, model: str = "gpt-4o-mini", api_key: Optional[str] = None,
                 client: Optional[OpenAI] = None, request_timeout: float = 5.0):
        self.logger = app_logger.bind(component="openai_intent_classifier")
        self.model = model
        self.request_timeout = request_timeout
        if client is None:
            if not api_key:
                raise ValueError("OpenAI API key is required for AI intent classification")
            client = OpenAI(api_key=api_key)
        self.client = client

    def classify(self, text: str, cancel_event: threading.Event) -> Optional[IntentResult]:
        if cancel_event.is_set():
            raise IntentClassificationCancelled("cancelled before request")

        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": text},
            ],
            response_format={"type": "json_object"},
            temperature=0,
            timeout=self.request_timeout,
        )

        if cancel_event.is_set():
            raise IntentClassificationCancelled("cancelled after request")
        return self.parse_response(response.choices[0].message.content)

    def parse_response(self, content: Optional[str]) -> Optional[IntentResult]:
        """Parse the model's JSON reply, ignoring anything malformed."""
        try:
            data = json.loads(content or "")
        except ValueError:
            self.logger.warning(f"Unparseable classifier reply: {content!r}")
            return None
        if not isinstance(data, dict):
            return None

        intent = data.get("intent")
        if intent not in INTENTS:
            self.logger.warning(f"Classifier returned unsupported intent {intent!r}")
            return None
        try:
            confidence = float(data.get("confidence", 0.5))
        except (TypeError, ValueError):
            confidence = 0.5
        return IntentResult(intent=intent, confidence=max(0.0, min(1.0, confidence)), source="ai")
