"""
Domain models (Pydantic v2) for the categorization pipeline.

Inputs accept both the snake_case field names and the camelCase wire names
sent by the web layer and the extension. Everything is frozen: results are
immutable once produced and cache entries are replaced, never edited.
Sensitive fields (subjects, snippets, addresses) are hashed in repr.
"""

from __future__ import annotations

from datetime import datetime, timezone
from hashlib import sha256
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from sweepy.contracts.categories import ActionType, Category, ResolutionSource
from sweepy.utils.email import extract_domain, is_marketing_mailer, normalize_address


def _hash_value(value: str) -> str:
    digest = sha256(value.encode("utf-8")).hexdigest()
    return f"hash:{digest[:12]}"


class RedactedModel(BaseModel):
    """Base model that redacts sensitive fields in repr."""

    model_config = ConfigDict(frozen=True)
    _redact_fields = {"subject", "snippet", "address", "name"}

    def _redacted_dump(self) -> dict[str, Any]:
        data = self.model_dump(exclude_none=True)
        return _redact(data, self._redact_fields)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self._redacted_dump()})"

    def redacted(self) -> dict[str, Any]:
        """Public helper for telemetry-safe dumps."""
        return self._redacted_dump()


def _redact(data: dict[str, Any], fields: set[str]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            out[key] = _redact(value, fields)
        elif key in fields and isinstance(value, str) and value:
            out[key] = _hash_value(value)
        else:
            out[key] = value
    return out


class WireModel(RedactedModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class SenderInfo(WireModel):
    address: str
    name: str = ""
    domain: str = ""

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if isinstance(data, str):
            data = {"address": data}
        if not isinstance(data, dict):
            return data
        normalized = dict(data)
        address = normalize_address(str(normalized.get("address") or ""))
        if not address:
            raise ValueError("sender address is required")
        normalized["address"] = address
        domain = str(normalized.get("domain") or "").strip().lower()
        normalized["domain"] = domain or extract_domain(address)
        normalized["name"] = normalized.get("name") or ""
        return normalized


# Header flags carried by the nested `headers` object of the wire format
_HEADER_FLAGS = ("hasListUnsubscribe", "hasPrecedenceBulk", "isNoreply", "hasReturnPathMismatch")


class EmailRecord(WireModel):
    """
    One email's metadata as handed to the pipeline.

    Only derived booleans and body-shape metrics are kept; raw bodies and
    header values never reach this model. Subject and snippet arrive
    pre-truncated and pre-sanitized by the caller and are taken as-is.
    """

    id: str = Field(min_length=1)
    thread_id: str = ""
    sender: SenderInfo = Field(alias="from")
    subject: str = ""
    snippet: str = ""
    date: str = ""
    is_read: bool = False

    has_list_unsubscribe: bool = False
    has_precedence_bulk: bool = False
    is_noreply: bool = False
    has_return_path_mismatch: bool = False
    has_one_click_unsubscribe: bool = False
    has_campaign_header: bool = False
    has_marketing_mailer: bool = False

    body_length: int = Field(default=0, ge=0)
    link_count: int = Field(default=0, ge=0)
    image_count: int = Field(default=0, ge=0)
    has_unsubscribe_text: bool = False

    @model_validator(mode="before")
    @classmethod
    def _flatten_headers(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not isinstance(data.get("headers"), dict):
            return data
        merged = dict(data)
        headers = merged.pop("headers")
        for flag in _HEADER_FLAGS:
            if flag in headers:
                merged.setdefault(flag, headers[flag])
        merged.setdefault("hasOneClickUnsubscribe", bool(headers.get("listUnsubscribePost")))
        merged.setdefault("hasCampaignHeader", bool(headers.get("xCampaign")))
        merged.setdefault("hasMarketingMailer", is_marketing_mailer(headers.get("xMailer")))
        return merged

    @field_validator("subject", "snippet", "thread_id", "date", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @property
    def sender_address(self) -> str:
        return self.sender.address

    @property
    def received_at(self) -> datetime | None:
        """Parsed ``date``, or None when it is missing or unparseable."""
        if not self.date:
            return None
        try:
            parsed = datetime.fromisoformat(self.date.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed


class SuggestedAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ActionType
    reason: str
    priority: int = Field(ge=1, le=5)


class CategorizationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    email_id: str
    category: Category
    confidence: float = Field(ge=0.0, le=1.0)
    source: ResolutionSource
    reasoning: str | None = None
    suggested_actions: tuple[SuggestedAction, ...] = ()

    @field_validator("suggested_actions")
    @classmethod
    def _ordered_by_priority(
        cls, value: tuple[SuggestedAction, ...]
    ) -> tuple[SuggestedAction, ...]:
        priorities = [action.priority for action in value]
        if priorities != sorted(priorities, reverse=True):
            raise ValueError("suggested_actions must be ordered by descending priority")
        return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SenderCacheEntry(BaseModel):
    """What the sender cache remembers about one (user, sender) pair."""

    model_config = ConfigDict(frozen=True)

    category: Category
    confidence: float = Field(ge=0.0, le=1.0)
    source: ResolutionSource
    cached_at: datetime = Field(default_factory=_utcnow)

    @field_validator("source")
    @classmethod
    def _source_allowed(cls, value: ResolutionSource) -> ResolutionSource:
        # Only the LLM tier and user corrections ever populate the cache
        if value not in (ResolutionSource.LLM, ResolutionSource.USER_OVERRIDE):
            raise ValueError(f"cache entries cannot come from {value.value}")
        return value

    @field_validator("cached_at")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def is_user_override(self) -> bool:
        return self.source == ResolutionSource.USER_OVERRIDE


class BatchStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int = 0
    resolved_by_heuristic: int = 0
    resolved_by_cache: int = 0
    resolved_by_llm: int = 0
    llm_cost_usd: float = 0.0
    llm_calls: int = 0
    llm_input_tokens: int = 0
    llm_output_tokens: int = 0
    invalid_records: int = 0
    category_counts: dict[str, int] = Field(default_factory=dict)


class PipelineResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    results: tuple[CategorizationResult, ...]
    stats: BatchStats
