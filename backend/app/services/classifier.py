from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from importlib import import_module
from typing import Any, Literal, Protocol, cast, get_args

from backend.app.services.errors import MalformedResponseError, TransientRemoteError

LOGGER = logging.getLogger("vibe_digest.classifier")

VibeCategory = Literal[
    "Vibe Coding",
    "Model Upgrades",
    "Robots",
    "Hype",
    "Sustainability",
    "Security",
    "AI Fail",
    "Human in the Loop",
    "Random",
]
VIBE_CATEGORIES: tuple[VibeCategory, ...] = cast(tuple[VibeCategory, ...], get_args(VibeCategory))
RANDOM_CATEGORY: VibeCategory = "Random"

DEFAULT_GEMINI_MODEL = "gemini-1.5-flash-latest"
DEFAULT_DESCRIPTION_EXCERPT_CHARS = 300
DEFAULT_TRANSCRIPT_EXCERPT_CHARS = 15_000

MUSIC_EXCLUSIONS: tuple[str, ...] = (
    "official video",
    "lyrics",
    "music video",
    "ft.",
    "feat.",
    "concert",
    "live performance",
    "album",
    "song",
    "remix",
    "fall out boy",
    "vevo",
    "records",
    "mv",
    "soundtrack",
)

# Scored categories, in tie-break order.
CATEGORY_KEYWORDS: tuple[tuple[VibeCategory, tuple[str, ...]], ...] = (
    (
        "Vibe Coding",
        (
            "cursor", "bolt", "replit", "vscode", "coding", "engineer", "software",
            "devin", "stackblitz", "copilot", "programming", "ide", "git",
            "mcp", "context protocol", "server", "typescript", "python", "shadcn",
            "nextjs", "react", "api", "sdk", "database", "evals", "observability",
            "infra", "deployment", "testing", "debug",
        ),
    ),
    (
        "Model Upgrades",
        (
            "gpt-4", "claude", "gemini", "llama", "deepseek", "mistral", "grok",
            "openai", "anthropic", "google", "meta", "benchmark", "sota", "multimodal",
            "reasoning", "flash", "pro", "ultra", "3.5", "o1", "v4", "llm",
        ),
    ),
    (
        "Robots",
        (
            "humanoid", "tesla bot", "optimus", "figure", "boston dynamics",
            "robot", "robotics", "servo", "actuator", "1x", "neo", "atlas",
            "unitree", "cyberdog", "spot", "digit", "agility",
        ),
    ),
    (
        "Hype",
        (
            "agi", "singularity", "doom", "revolution", "trillion", "game over",
            "end of", "insane", "mind blowing", "scary", "dangerous", "warning",
            "urgent", "huge news", "breakthrough", "changed everything",
        ),
    ),
    (
        "Sustainability",
        (
            "climate", "energy", "carbon", "power", "green", "nuclear", "fusion",
            "environment", "solar", "sustainable", "grid", "battery", "emissions",
        ),
    ),
    (
        "Security",
        (
            "security", "hack", "exploit", "vulnerability", "injection", "jailbreak",
            "red team", "privacy", "safety", "cyber", "auth", "penetration", "attack",
        ),
    ),
    (
        "AI Fail",
        (
            "hallucination", "wrong answer", "fail", "error", "confused", "nonsense",
            "glitch", "stupid ai", "broken", "mess up", "failure", "lying",
        ),
    ),
)

CLASSIFICATION_PROMPT_TEMPLATE = """\
You are a strict video curator for an AI Engineering Newsletter.
Analyze the following video metadata AND transcript to classify it into EXACTLY ONE category.
Provide a short reason for your decision.

Categories:
1. "Vibe Coding": Software engineering, coding tools, IDEs (Cursor, Replit), MCP, Evals, CI/CD, Observability, Infra.
2. "Model Upgrades": New LLM releases, benchmarks, GPT-4, Claude, Gemini, model architecture decisions.
3. "Robots": Physical humanoid robots, hardware robotics, Tesla Optimus.
4. "Hype": AGI predictions, doomerism, singularity talk, "changed everything" type sentiment.
5. "Sustainability": Energy, Nuclear Fusion, Climate Tech, Power Grids, Green AI.
6. "Security": AI Safety, Jailbreaks, Prompt Injection, Hacking, Cyber Security.
7. "AI Fail": AI Hallucinations, logic errors, funny failures. STRICTLY EXCLUDE Physical/Robot failures.
8. "Human in the Loop": Tech/AI related, but vague or doesn't fit clearly into above categories. (Use this for uncertainty).
9. "Random": STRICTLY for Non-AI content. Music, Politics, Funny videos, Animals, General Tech news not specifically about AI engineering.

Critical Rules:
- If I don't know, or it's vague: Choose "Random".
- "Dog saves child" -> Random. (NOT Model Upgrades).
- "Interview with Sam Altman" -> Random (unless he announces a specific Model).
- "Evals and Observability" -> Vibe Coding.
- "MCP Demos" -> Vibe Coding.
- "Fall Out Boy" -> Random.
- "Robot falling down" -> Robots (NOT AI Fail).
- "ChatGPT can't do math" -> AI Fail.
- If unsure between Tech categories -> Human in the Loop.

Output JSON format only:
{{
  "category": "Category Name",
  "reason": "Max 10 words explanation."
}}

Video Title: {title}
Video Description: {description}...
Tags: {tags}
Transcript Start: {transcript}...
"""

_CODE_FENCE_PATTERN = re.compile(r"```(?:json)?", re.IGNORECASE)


@dataclass(frozen=True)
class Classification:
    category: VibeCategory
    reason: str


@dataclass(frozen=True)
class ClassificationInput:
    title: str
    description: str = ""
    tags: tuple[str, ...] = ()
    transcript: str | None = None

    @property
    def metadata_text(self) -> str:
        return f"{self.title} {self.description} {' '.join(self.tags)}".lower()


class ClassificationStrategy(Protocol):
    name: str

    def decide(self, item: ClassificationInput) -> Classification | None:
        ...


class GenerativeTextClient(Protocol):
    def generate(self, prompt: str) -> str:
        ...


class BlocklistStrategy:
    name = "blocklist"

    def __init__(self, terms: Sequence[str] = MUSIC_EXCLUSIONS) -> None:
        self._terms = tuple(term.lower() for term in terms if term)

    def decide(self, item: ClassificationInput) -> Classification | None:
        text = item.metadata_text
        for term in self._terms:
            if term in text:
                return Classification(
                    category=RANDOM_CATEGORY,
                    reason=f'Blocked term: "{term}" detected.',
                )
        return None


class GenerativeStrategy:
    name = "generative"

    def __init__(
        self,
        client: GenerativeTextClient,
        *,
        description_excerpt_chars: int = DEFAULT_DESCRIPTION_EXCERPT_CHARS,
        transcript_excerpt_chars: int = DEFAULT_TRANSCRIPT_EXCERPT_CHARS,
    ) -> None:
        self._client = client
        self._description_excerpt_chars = max(0, description_excerpt_chars)
        self._transcript_excerpt_chars = max(0, transcript_excerpt_chars)

    def decide(self, item: ClassificationInput) -> Classification | None:
        prompt = self.build_prompt(item)
        try:
            output_text = self._client.generate(prompt)
            return parse_classification_output(output_text)
        except TransientRemoteError as exc:
            LOGGER.warning(
                "classifier generative_failed title=%s error=%s", item.title[:60], exc
            )
            return None

    def build_prompt(self, item: ClassificationInput) -> str:
        transcript_excerpt = (
            item.transcript[: self._transcript_excerpt_chars]
            if item.transcript
            else "No transcript available."
        )
        return CLASSIFICATION_PROMPT_TEMPLATE.format(
            title=item.title,
            description=item.description[: self._description_excerpt_chars],
            tags=", ".join(item.tags),
            transcript=transcript_excerpt,
        )


class HeuristicStrategy:
    name = "heuristic"

    def __init__(
        self,
        keywords: Sequence[tuple[VibeCategory, Sequence[str]]] = CATEGORY_KEYWORDS,
    ) -> None:
        self._patterns: list[tuple[VibeCategory, list[re.Pattern[str]]]] = [
            (
                category,
                [re.compile(rf"\b{re.escape(word)}\b", re.IGNORECASE) for word in words],
            )
            for category, words in keywords
        ]

    def decide(self, item: ClassificationInput) -> Classification:
        text = item.metadata_text
        best_category: VibeCategory = RANDOM_CATEGORY
        max_score = 0
        for category, patterns in self._patterns:
            score = sum(1 for pattern in patterns if pattern.search(text))
            if score > max_score:
                max_score = score
                best_category = category

        if max_score < 1:
            return Classification(category=RANDOM_CATEGORY, reason="No specific keywords matched.")
        return Classification(
            category=best_category,
            reason=f"Matched keywords for {best_category} (Score: {max_score})",
        )


class VideoClassifier:
    """Runs strategies in order; the first one to decide wins.

    The trailing heuristic always decides, so ``classify`` never comes back empty and
    never raises for a provider outage.
    """

    def __init__(self, strategies: Sequence[ClassificationStrategy]) -> None:
        self._strategies = list(strategies)
        self._fallback = HeuristicStrategy()

    @property
    def strategy_names(self) -> list[str]:
        return [strategy.name for strategy in self._strategies]

    def classify(
        self,
        title: str,
        description: str = "",
        tags: Sequence[str] = (),
        transcript: str | None = None,
    ) -> Classification:
        item = ClassificationInput(
            title=title,
            description=description or "",
            tags=tuple(tags),
            transcript=transcript,
        )
        for strategy in self._strategies:
            try:
                decision = strategy.decide(item)
            except Exception:
                LOGGER.warning(
                    "classifier strategy_failed strategy=%s title=%s",
                    strategy.name,
                    title[:60],
                    exc_info=True,
                )
                continue
            if decision is not None:
                LOGGER.debug(
                    "classifier decided strategy=%s category=%s", strategy.name, decision.category
                )
                return decision
        return self._fallback.decide(item)


class GeminiTextClient:
    def __init__(self, *, api_key: str, model: str = DEFAULT_GEMINI_MODEL) -> None:
        self._api_key = api_key
        self._model = model
        self._client: Any | None = None

    def generate(self, prompt: str) -> str:
        client = self._get_client()
        try:
            response = client.models.generate_content(
                model=self._model,
                contents=prompt,
                config={"response_mime_type": "application/json"},
            )
        except Exception as exc:
            raise TransientRemoteError(f"Gemini request failed: {exc}") from exc

        text = getattr(response, "text", None)
        if not isinstance(text, str) or not text.strip():
            raise MalformedResponseError("Gemini returned an empty response")
        return text

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                genai_module = import_module("google.genai")
            except ImportError as exc:  # pragma: no cover - dependency controlled at runtime
                raise TransientRemoteError(
                    "Generative classification requires the google-genai dependency"
                ) from exc
            client_cls: Any = genai_module.Client
            self._client = client_cls(api_key=self._api_key)
        return self._client


def parse_classification_output(output_text: str) -> Classification:
    cleaned = _CODE_FENCE_PATTERN.sub("", output_text).strip()
    try:
        parsed = cast(object, json.loads(cleaned))
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(f"Classification output is not JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise MalformedResponseError("Classification output is not a JSON object")

    payload = cast(dict[str, object], parsed)
    category = payload.get("category")
    if not isinstance(category, str) or category not in VIBE_CATEGORIES:
        raise MalformedResponseError(f"Unknown category in classification output: {category!r}")

    reason = payload.get("reason")
    return Classification(
        category=cast(VibeCategory, category),
        reason=reason.strip() if isinstance(reason, str) and reason.strip() else "AI Classification",
    )


def is_vibe_category(value: object) -> bool:
    return isinstance(value, str) and value in VIBE_CATEGORIES


def build_classifier(
    *,
    google_api_key: str | None,
    gemini_model: str = DEFAULT_GEMINI_MODEL,
    description_excerpt_chars: int = DEFAULT_DESCRIPTION_EXCERPT_CHARS,
    transcript_excerpt_chars: int = DEFAULT_TRANSCRIPT_EXCERPT_CHARS,
    text_client: GenerativeTextClient | None = None,
) -> VideoClassifier:
    strategies: list[ClassificationStrategy] = [BlocklistStrategy()]
    if text_client is None and google_api_key and google_api_key.strip():
        text_client = GeminiTextClient(api_key=google_api_key.strip(), model=gemini_model)
    if text_client is not None:
        strategies.append(
            GenerativeStrategy(
                text_client,
                description_excerpt_chars=description_excerpt_chars,
                transcript_excerpt_chars=transcript_excerpt_chars,
            )
        )
    strategies.append(HeuristicStrategy())
    return VideoClassifier(strategies)
