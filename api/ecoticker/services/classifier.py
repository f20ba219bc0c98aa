"""
Classifier client - LLM-backed article assessment via OpenRouter chat completions.

Two calls:
  score_articles  per-article health/eco/econ severity for one topic's batch
  assign_topics   groups fresh articles into existing or new topics

Every failure mode (transport error, timeout, non-200, unparseable payload)
surfaces as ExternalServiceFailure. Retry and partial-failure policy belong
to the caller.
"""
import json
import re
from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence

import httpx
import structlog

from ecoticker.errors import ExternalServiceFailure
from ecoticker.models.topics import CATEGORIES
from ecoticker.services.scoring import ValidatedScore, validate_score

logger = structlog.get_logger()


@dataclass(frozen=True)
class ArticleText:
    title: str
    summary: Optional[str] = None
    url: Optional[str] = None


@dataclass
class ArticleAssessment:
    health: ValidatedScore
    eco: ValidatedScore
    econ: ValidatedScore
    confidence: float = 0.5
    summary: str = ""
    category: Optional[str] = None
    region: Optional[str] = None
    keywords: list[str] = field(default_factory=list)
    reasoning: str = ""

    @property
    def clamped_dimensions(self) -> list[str]:
        return [name for name in ("health", "eco", "econ") if getattr(self, name).clamped]


@dataclass(frozen=True)
class TopicAssignment:
    article_index: int
    topic_name: str
    is_new: bool


class Classifier(Protocol):

    def score_articles(self, topic_name: str, articles: Sequence[ArticleText]) -> list[ArticleAssessment]: ...

    def assign_topics(self, articles: Sequence[ArticleText],
                      existing_topics: Sequence[tuple[str, list[str]]]) -> list[TopicAssignment]: ...


# ─── Prompts ───

SEVERITY_RUBRIC = """Severity levels:
- MINIMAL (0-25): no measurable impact, theoretical or negligible risk.
- MODERATE (26-50): localized, limited, reversible impact.
- SIGNIFICANT (51-75): widespread or serious impact, difficult to reverse.
- SEVERE (76-100): catastrophic, potentially irreversible.

Dimensions:
1. health: risk to human health (air/water quality, disease, food safety, mortality)
2. eco: damage to ecosystems and biodiversity
3. econ: financial and livelihood consequences

Do not default to MODERATE. Base severity only on what the article says.
If an article does not support a dimension, use level "INSUFFICIENT_DATA" and score -1.
The numeric score must fall inside the range of the level you chose."""


def build_scoring_prompt(topic_name: str, articles: Sequence[ArticleText]) -> str:
    listing = "\n".join(
        f"{i}. {a.title}: {a.summary or 'No description'}" for i, a in enumerate(articles)
    )
    return f"""You are an environmental impact analyst scoring news articles about "{topic_name}".

Articles:
{listing}

{SEVERITY_RUBRIC}

Assess EVERY article separately. Respond with ONLY valid JSON:
{{
  "assessments": [
    {{
      "articleIndex": 0,
      "healthLevel": "MODERATE", "healthScore": 38,
      "ecoLevel": "SIGNIFICANT", "ecoScore": 65,
      "econLevel": "MINIMAL", "econScore": 18,
      "confidence": 0.8,
      "reasoning": "2-3 sentences",
      "summary": "1-2 sentence synthesis",
      "category": "one of {', '.join(CATEGORIES)}",
      "region": "Global",
      "keywords": ["keyword1", "keyword2"]
    }}
  ]
}}"""


def build_assignment_prompt(articles: Sequence[ArticleText],
                            existing_topics: Sequence[tuple[str, list[str]]]) -> str:
    topics_list = "\n".join(
        f'- "{name}" (keywords: {", ".join(keywords)})' for name, keywords in existing_topics
    ) or "(none yet)"
    titles = "\n".join(f"{i}. {a.title}" for i, a in enumerate(articles))
    return f"""You are an environmental news filter and classifier.

TASK 1 - FILTER: keep only articles reporting a specific, recent environmental
event or development (climate impacts, biodiversity, pollution, oceans, forests,
energy and emissions, environmental policy). Reject Q&A and explainer content,
listicles, product and entertainment news.

TASK 2 - CLASSIFY: group the kept articles into topics. Use existing topics
where they match; create a new topic name only when none fits.

Existing topics:
{topics_list}

Articles:
{titles}

Respond with ONLY valid JSON:
{{
  "classifications": [{{"articleIndex": 0, "topicName": "Topic Name", "isNew": false}}],
  "rejected": [1, 3]
}}"""


def extract_json(raw: str) -> Optional[dict]:
    """Pull the first JSON object out of a model reply; None if there is none."""
    text = raw.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[-1]
    if text.endswith("```"):
        text = text.rsplit("```", 1)[0]
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        match = re.search(r"\{.*\}", text, re.DOTALL)
        if not match:
            return None
        try:
            parsed = json.loads(match.group())
        except json.JSONDecodeError:
            return None
    return parsed if isinstance(parsed, dict) else None


def _as_float(value, default: float) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return default


def parse_assessment(item: dict) -> ArticleAssessment:
    category = item.get("category")
    keywords = item.get("keywords")
    return ArticleAssessment(
        health=validate_score(item.get("healthLevel"), item.get("healthScore")),
        eco=validate_score(item.get("ecoLevel"), item.get("ecoScore")),
        econ=validate_score(item.get("econLevel"), item.get("econScore")),
        confidence=_as_float(item.get("confidence"), 0.5),
        summary=item.get("summary") or "",
        category=category if category in CATEGORIES else None,
        region=item.get("region") or None,
        keywords=[str(k).strip().lower() for k in keywords if str(k).strip()] if isinstance(keywords, list) else [],
        reasoning=item.get("reasoning") or "",
    )


class OpenRouterClassifier:

    def __init__(self, api_key: Optional[str], model: str,
                 url: str = "https://openrouter.ai/api/v1/chat/completions",
                 timeout: float = 60.0, client: Optional[httpx.Client] = None):
        self.api_key = api_key
        self.model = model
        self.url = url
        self.client = client or httpx.Client(timeout=timeout)

    @classmethod
    def from_settings(cls, settings) -> "OpenRouterClassifier":
        return cls(
            api_key=settings.OPENROUTER_API_KEY,
            model=settings.OPENROUTER_MODEL,
            url=settings.OPENROUTER_URL,
            timeout=settings.CLASSIFIER_TIMEOUT_SECONDS,
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def _complete(self, prompt: str, json_mode: bool = True) -> str:
        if not self.api_key:
            raise ExternalServiceFailure("OPENROUTER_API_KEY not configured")

        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": 0,
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}

        try:
            response = self.client.post(
                self.url,
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                json=body,
            )
        except httpx.TimeoutException as e:
            raise ExternalServiceFailure("Classifier timed out") from e
        except httpx.HTTPError as e:
            raise ExternalServiceFailure(f"Classifier request failed: {e}") from e

        if response.status_code != 200:
            logger.error("classifier: API error", status=response.status_code, body=response.text[:500])
            raise ExternalServiceFailure(f"Classifier returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise ExternalServiceFailure("Classifier returned a non-JSON body") from e

        choices = data.get("choices") if isinstance(data, dict) else None
        first = choices[0] if isinstance(choices, list) and choices else None
        message = first.get("message") if isinstance(first, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            logger.warning("classifier: reply without message content", body=response.text[:300])
            raise ExternalServiceFailure("Classifier returned an invalid payload")
        return content

    def score_articles(self, topic_name: str, articles: Sequence[ArticleText]) -> list[ArticleAssessment]:
        if not articles:
            return []
        raw = self._complete(build_scoring_prompt(topic_name, articles))
        parsed = extract_json(raw)
        items = parsed.get("assessments") if parsed else None
        if not isinstance(items, list):
            logger.warning("classifier: unparseable scoring reply", topic=topic_name, reply=raw[:300])
            raise ExternalServiceFailure("Classifier returned an invalid payload")

        by_index = {}
        for position, item in enumerate(items):
            if not isinstance(item, dict):
                continue
            index = item.get("articleIndex", position)
            if isinstance(index, int) and 0 <= index < len(articles):
                by_index[index] = parse_assessment(item)

        if len(by_index) != len(articles):
            raise ExternalServiceFailure(
                f"Classifier assessed {len(by_index)} of {len(articles)} articles"
            )

        assessments = [by_index[i] for i in range(len(articles))]
        for i, a in enumerate(assessments):
            if a.clamped_dimensions:
                logger.warning("classifier: clamped scores", topic=topic_name,
                               article_index=i, dimensions=a.clamped_dimensions)
        return assessments

    def assign_topics(self, articles: Sequence[ArticleText],
                      existing_topics: Sequence[tuple[str, list[str]]]) -> list[TopicAssignment]:
        if not articles:
            return []
        raw = self._complete(build_assignment_prompt(articles, existing_topics), json_mode=False)
        parsed = extract_json(raw)
        items = parsed.get("classifications") if parsed else None
        if not isinstance(items, list):
            logger.warning("classifier: unparseable assignment reply", reply=raw[:300])
            raise ExternalServiceFailure("Classifier returned an invalid payload")

        rejected = parsed.get("rejected")
        if isinstance(rejected, list) and rejected:
            logger.info("classifier: articles rejected as irrelevant",
                        rejected=len(rejected), total=len(articles))

        assignments = []
        for item in items:
            if not isinstance(item, dict):
                continue
            index = item.get("articleIndex")
            name = (item.get("topicName") or "").strip()
            if isinstance(index, int) and 0 <= index < len(articles) and name:
                assignments.append(TopicAssignment(index, name, bool(item.get("isNew"))))
        return assignments
