"""
Data model shared by the pipeline stages, the store and the HTTP layer.

Python attributes are snake_case; ``to_dict()`` emits the camelCase wire
format the web client consumes, and ``from_dict()`` accepts either.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional

from blogsmith.utils import now_iso

# ---------------------------------------------------------------------------
# Key-case helpers
# ---------------------------------------------------------------------------

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def to_snake(name: str) -> str:
    return _CAMEL_RE.sub("_", name).lower()


def camelize(value: Any) -> Any:
    """Recursively convert dict keys from snake_case to camelCase."""
    if isinstance(value, dict):
        return {to_camel(k) if isinstance(k, str) else k: camelize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [camelize(v) for v in value]
    if isinstance(value, Enum):
        return value.value
    return value


def _known_kwargs(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    known = {f.name for f in fields(cls)}
    out: Dict[str, Any] = {}
    for key, value in data.items():
        name = key if key in known else to_snake(key)
        if name in known:
            out[name] = value
    return out


def _string_list(value: Any) -> List[str]:
    """Non-blank strings from a list, or a one-item list from a bare string."""
    if isinstance(value, str):
        value = [value]
    return [str(v) for v in value or [] if str(v).strip()]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ResearchDepth(str, Enum):
    SHALLOW = "shallow"
    MODERATE = "moderate"
    DEEP = "deep"


class ArticleStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    PUBLISHED = "published"


class CTAPosition(str, Enum):
    AFTER_INTRO = "after-intro"
    AFTER_SECTION = "after-section"
    MIDDLE = "middle"
    BEFORE_CONCLUSION = "before-conclusion"
    END = "end"


class CTAStyle(str, Enum):
    DEFAULT = "default"
    BORDERED = "bordered"
    GRADIENT = "gradient"
    MINIMAL = "minimal"
    CUSTOM = "custom"


class PipelineStep(str, Enum):
    """Ordered states of a generation run."""
    RESEARCH = "research"
    OUTLINE = "outline"
    WRITING = "writing"
    SEO = "seo"
    IMAGES = "images"
    WORDPRESS = "wordpress"
    COMPLETED = "completed"


# ---------------------------------------------------------------------------
# Token accounting
# ---------------------------------------------------------------------------


@dataclass
class TokenUsage:
    """Additive token counters; never decremented."""
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def add(self, other: TokenUsage) -> TokenUsage:
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        return self

    def to_dict(self) -> Dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }

    def to_totals(self) -> Dict[str, int]:
        """The ``{input, output, total}`` shape used in run summaries."""
        return {
            "input": self.prompt_tokens,
            "output": self.completion_tokens,
            "total": self.total_tokens,
        }


@dataclass
class GenerateOptions:
    """Per-call options for the provider adapter."""
    provider: str = "openai"
    model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    reasoning_effort: Optional[str] = None
    verbosity: Optional[str] = None


@dataclass
class GenerationResult:
    text: str
    usage: TokenUsage = field(default_factory=TokenUsage)


# ---------------------------------------------------------------------------
# Research
# ---------------------------------------------------------------------------


@dataclass
class SearchResult:
    title: str
    content: str
    url: str
    relevance_score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return camelize(asdict(self))


@dataclass
class ResearchBundle:
    query: str
    results: List[SearchResult] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = ""
    queries: List[str] = field(default_factory=list)
    timestamp: str = field(default_factory=now_iso)

    @classmethod
    def empty(cls, query: str, model: str = "") -> ResearchBundle:
        return cls(query=query, model=model)

    def full_text(self) -> str:
        """All result content as numbered source blocks."""
        return "\n\n".join(
            f"[Source {i}]\n{r.content}" for i, r in enumerate(self.results, start=1)
        )

    def sample(self, limit: int = 5) -> List[Dict[str, str]]:
        return [{"title": r.title, "url": r.url} for r in self.results[:limit]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "results": [r.to_dict() for r in self.results],
            "usage": self.usage.to_dict(),
            "model": self.model,
            "queries": list(self.queries),
            "timestamp": self.timestamp,
        }


# ---------------------------------------------------------------------------
# Outline
# ---------------------------------------------------------------------------


@dataclass
class OutlineSection:
    title: str
    key_points: List[str] = field(default_factory=list)
    estimated_word_count: int = 300
    subsections: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> OutlineSection:
        kwargs = _known_kwargs(cls, data)
        kwargs["title"] = str(kwargs.get("title") or "").strip()
        kwargs["key_points"] = _string_list(kwargs.get("key_points"))
        kwargs["subsections"] = [str(s) for s in kwargs.get("subsections") or []]
        try:
            kwargs["estimated_word_count"] = int(kwargs.get("estimated_word_count") or 300)
        except (TypeError, ValueError):
            kwargs["estimated_word_count"] = 300
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return camelize(asdict(self))


@dataclass
class Outline:
    title: str
    introduction_points: List[str] = field(default_factory=list)
    tone: str = "professional"
    sections: List[OutlineSection] = field(default_factory=list)
    conclusion_points: List[str] = field(default_factory=list)
    call_to_action: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        conclusion: Dict[str, Any] = {"keyPoints": list(self.conclusion_points)}
        if self.call_to_action:
            conclusion["callToAction"] = self.call_to_action
        return {
            "title": self.title,
            "introduction": {"keyPoints": list(self.introduction_points), "tone": self.tone},
            "sections": [s.to_dict() for s in self.sections],
            "conclusion": conclusion,
        }


# ---------------------------------------------------------------------------
# Article content & SEO
# ---------------------------------------------------------------------------


@dataclass
class ArticleContent:
    html: str = ""
    word_count: int = 0
    sources: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return camelize(asdict(self))


@dataclass
class SEOMetadata:
    meta_title: str
    meta_description: str
    slug: str
    keywords: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SEOMetadata:
        kwargs = _known_kwargs(cls, data)
        return cls(
            meta_title=str(kwargs.get("meta_title") or ""),
            meta_description=str(kwargs.get("meta_description") or ""),
            slug=str(kwargs.get("slug") or ""),
            keywords=_string_list(kwargs.get("keywords")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return camelize(asdict(self))


@dataclass
class SEOAnalysis:
    score: int
    recommendations: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Images & CTAs
# ---------------------------------------------------------------------------


@dataclass
class ImageAsset:
    id: str
    url: str
    alt: str
    author: Optional[str] = None
    author_url: Optional[str] = None
    search_term: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return camelize(asdict(self))


@dataclass
class CTAColors:
    background: Optional[str] = None
    title_color: Optional[str] = None
    description_color: Optional[str] = None
    button_background: Optional[str] = None
    button_text_color: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> CTAColors:
        return cls(**_known_kwargs(cls, data or {}))


@dataclass
class CTA:
    """A user-authored call-to-action block (also stored as a template)."""
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    title: str = ""
    description: str = ""
    button_text: str = ""
    button_url: str = ""
    image_url: Optional[str] = None
    position_type: CTAPosition = CTAPosition.END
    section_number: Optional[int] = None
    style: CTAStyle = CTAStyle.DEFAULT
    custom_colors: Optional[CTAColors] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> CTA:
        kwargs = _known_kwargs(cls, data)
        generated = data.get("generatedText") or {}
        for key in ("title", "description", "button_text"):
            if not kwargs.get(key) and generated.get(to_camel(key)):
                kwargs[key] = generated[to_camel(key)]
        kwargs["position_type"] = CTAPosition(kwargs.get("position_type") or CTAPosition.END.value)
        kwargs["style"] = CTAStyle(kwargs.get("style") or CTAStyle.DEFAULT.value)
        if kwargs.get("section_number") is not None:
            kwargs["section_number"] = int(kwargs["section_number"])
        if kwargs.get("custom_colors") is not None and not isinstance(kwargs["custom_colors"], CTAColors):
            kwargs["custom_colors"] = CTAColors.from_dict(kwargs["custom_colors"])
        if not kwargs.get("id"):
            kwargs.pop("id", None)
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data = camelize(asdict(self))
        if self.custom_colors is None:
            data.pop("customColors", None)
        return data


# ---------------------------------------------------------------------------
# Generation request
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GenerationRequest:
    """Input bundle for one run; immutable once the run starts."""
    topic: str
    use_research: bool = True
    research_depth: ResearchDepth = ResearchDepth.MODERATE
    number_of_images: int = 0
    publish_to_wordpress: bool = False
    provider: str = "openai"
    model: Optional[str] = None
    reasoning_effort: Optional[str] = None
    verbosity: Optional[str] = None
    extra_context: str = ""
    ctas: tuple = ()

    def __post_init__(self) -> None:
        if not self.topic or not self.topic.strip():
            raise ValueError("topic is required")
        # Frozen: normalize through object.__setattr__
        object.__setattr__(self, "number_of_images", max(0, min(5, int(self.number_of_images or 0))))
        object.__setattr__(self, "research_depth", ResearchDepth(self.research_depth))
        object.__setattr__(self, "provider", (self.provider or "openai").lower())
        object.__setattr__(self, "ctas", tuple(self.ctas or ()))

    def options(self, temperature: float, max_tokens: Optional[int]) -> GenerateOptions:
        return GenerateOptions(
            provider=self.provider,
            model=self.model,
            temperature=temperature,
            max_tokens=max_tokens,
            reasoning_effort=self.reasoning_effort,
            verbosity=self.verbosity,
        )


# ---------------------------------------------------------------------------
# Stored article
# ---------------------------------------------------------------------------


@dataclass
class StoredArticle:
    """Persisted article record owned by one user."""
    user_id: str
    title: str
    content: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    topic: str = ""
    status: str = ArticleStatus.DRAFT.value
    word_count: int = 0
    seo_metadata: Optional[Dict[str, Any]] = None
    seo_score: Optional[int] = None
    outline: Optional[Dict[str, Any]] = None
    images: List[Dict[str, Any]] = field(default_factory=list)
    scheduled_at: Optional[str] = None
    published_at: Optional[str] = None
    wordpress_post_id: Optional[int] = None
    wordpress_edit_url: Optional[str] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> StoredArticle:
        return cls(**_known_kwargs(cls, data))

    def to_dict(self) -> Dict[str, Any]:
        return camelize(asdict(self))
