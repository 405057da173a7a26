"""
First resolution tier: deterministic header and sender rules.

Rules run in priority order and the first match wins. The tier is total:
every record gets a result, ``unknown``/0.0 when nothing fires. It never
answers ``personal`` or ``important``; those need cache or LLM agreement.

Domain lists and subject patterns live in config/heuristic_rules.yaml so
they can be tuned without a code change.
"""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, NamedTuple

import yaml  # type: ignore[import-untyped]

from sweepy.contracts.categories import Category
from sweepy.infrastructure.settings import CONFIG_DIR
from sweepy.observability.confidence import HEURISTIC_CONFIDENCE_MIN
from sweepy.observability.logging import get_logger
from sweepy.observability.telemetry import counter, log_event
from sweepy.storage.models import EmailRecord
from sweepy.utils.email import domain_and_parents

logger = get_logger(__name__)


class HeuristicResult(NamedTuple):
    category: Category
    confidence: float
    rule: str


NO_MATCH = HeuristicResult(Category.UNKNOWN, 0.0, "no-signal")

_NOREPLY_PREFIXES = ("noreply", "no-reply", "donotreply", "do-not-reply")


@dataclass(frozen=True)
class HeuristicRuleSet:
    """Compiled view of heuristic_rules.yaml."""

    marketing_domains: frozenset[str] = frozenset()
    social_domains: frozenset[str] = frozenset()
    dev_tool_domains: frozenset[str] = frozenset()
    transactional_patterns: tuple[re.Pattern[str], ...] = ()
    promotional_patterns: tuple[re.Pattern[str], ...] = ()
    noreply_prefixes: tuple[str, ...] = _NOREPLY_PREFIXES
    max_snippet_chars: int = 80
    min_links_per_kb: float = 4.0
    version: str = "builtin"

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> HeuristicRuleSet:
        def domains(key: str) -> frozenset[str]:
            return frozenset(str(d).strip().lower() for d in config.get(key, []) or [])

        def patterns(key: str) -> tuple[re.Pattern[str], ...]:
            return tuple(re.compile(p, re.IGNORECASE) for p in config.get(key, []) or [])

        shape = config.get("transactional_shape", {}) or {}
        return cls(
            marketing_domains=domains("marketing_domains"),
            social_domains=domains("social_domains"),
            dev_tool_domains=domains("dev_tool_domains"),
            transactional_patterns=patterns("transactional_subject_patterns"),
            promotional_patterns=patterns("promotional_subject_patterns"),
            noreply_prefixes=tuple(config.get("noreply_prefixes") or _NOREPLY_PREFIXES),
            max_snippet_chars=int(shape.get("max_snippet_chars", 80)),
            min_links_per_kb=float(shape.get("min_links_per_kb", 4.0)),
            version=str(config.get("version", "unknown")),
        )


# Used when the YAML file cannot be found: enough to keep the common cases working
_BUILTIN_CONFIG: dict[str, Any] = {
    "version": "builtin",
    "marketing_domains": ["mailchimp.com", "sendgrid.net", "klaviyo.com", "hubspot.com"],
    "social_domains": ["facebookmail.com", "linkedin.com", "x.com", "reddit.com"],
    "dev_tool_domains": ["github.com", "gitlab.com", "atlassian.net", "slack.com"],
    "transactional_subject_patterns": [
        r"\b(receipt|invoice|order\s*(confirmation|#|number)|payment\s*received)\b",
        r"\b(password\s+reset|verify\s+your|security\s+code)\b",
    ],
    "promotional_subject_patterns": [
        r"\b\d+%\s*(off|discount)\b",
        r"\b(sale|promo|coupon|deal|deals|off)\b",
        r"\bfree\s+shipping\b",
    ],
}


def load_rules(rules_path: str | Path | None = None) -> HeuristicRuleSet:
    """
    Load heuristic rules from YAML, falling back to the builtin set.

    Side Effects:
        - Reads config/heuristic_rules.yaml from the filesystem
    """
    if rules_path is not None:
        possible_paths = [Path(rules_path)]
    else:
        possible_paths = [
            CONFIG_DIR / "heuristic_rules.yaml",
            Path("config/heuristic_rules.yaml"),
        ]

    for path in possible_paths:
        if not path.exists():
            continue
        with open(path) as f:
            config = yaml.safe_load(f) or {}
        if not config:
            logger.warning("Heuristic rules file is empty: %s", path)
            break
        rules = HeuristicRuleSet.from_config(config)
        logger.info(
            "Loaded heuristic rules version %s (%d marketing, %d social, %d dev domains)",
            rules.version,
            len(rules.marketing_domains),
            len(rules.social_domains),
            len(rules.dev_tool_domains),
        )
        return rules

    logger.warning("heuristic_rules.yaml not found, using builtin rules")
    return HeuristicRuleSet.from_config(_BUILTIN_CONFIG)


@dataclass(frozen=True)
class _Rule:
    name: str
    test: Callable[[EmailRecord], bool]
    category: Category | Callable[[EmailRecord], Category]
    confidence: float

    def category_for(self, record: EmailRecord) -> Category:
        if isinstance(self.category, Category):
            return self.category
        return self.category(record)


@dataclass
class HeuristicClassifier:
    """
    Header/sender rule engine.

    Example:
        >>> classifier = HeuristicClassifier()
        >>> record = EmailRecord.model_validate({
        ...     "id": "m1", "from": {"address": "promo@shop.example"},
        ...     "isNoreply": True, "hasPrecedenceBulk": True, "hasListUnsubscribe": True,
        ... })
        >>> classifier.classify(record).category
        <Category.NEWSLETTER: 'newsletter'>
    """

    rules: HeuristicRuleSet = field(default_factory=load_rules)
    threshold: float = HEURISTIC_CONFIDENCE_MIN

    def __post_init__(self) -> None:
        self._ordered_rules = self._build_rules()

    def _build_rules(self) -> list[_Rule]:
        return [
            _Rule(
                "known-marketing-domain",
                lambda r: self._domain_in(r, self.rules.marketing_domains),
                Category.MARKETING,
                0.95,
            ),
            _Rule(
                "known-social-domain",
                lambda r: self._domain_in(r, self.rules.social_domains),
                Category.SOCIAL,
                0.93,
            ),
            _Rule(
                "known-dev-tool-domain",
                lambda r: self._domain_in(r, self.rules.dev_tool_domains),
                Category.NOTIFICATION,
                0.92,
            ),
            _Rule(
                "bulk-noreply-unsubscribe",
                lambda r: self._is_noreply(r) and r.has_precedence_bulk and r.has_list_unsubscribe,
                self._marketing_or_newsletter,
                0.90,
            ),
            _Rule(
                "transactional-subject",
                lambda r: self._matches_any(r.subject, self.rules.transactional_patterns),
                Category.TRANSACTIONAL,
                0.88,
            ),
            _Rule(
                "promotional-subject-with-unsubscribe",
                lambda r: self._has_unsubscribe(r)
                and self._matches_any(r.subject, self.rules.promotional_patterns),
                Category.MARKETING,
                0.88,
            ),
            _Rule(
                "campaign-or-mailer-header",
                lambda r: r.has_campaign_header or r.has_marketing_mailer,
                Category.MARKETING,
                0.85,
            ),
            _Rule(
                "return-path-mismatch-unsubscribe",
                lambda r: r.has_return_path_mismatch and self._has_unsubscribe(r),
                Category.MARKETING,
                0.82,
            ),
            _Rule(
                "list-unsubscribe-header",
                lambda r: r.has_list_unsubscribe and not r.has_precedence_bulk,
                Category.NEWSLETTER,
                0.75,
            ),
            _Rule(
                "precedence-bulk",
                lambda r: r.has_precedence_bulk,
                Category.NEWSLETTER,
                0.72,
            ),
            _Rule(
                "noreply-no-unsubscribe",
                lambda r: self._is_noreply(r) and not self._has_unsubscribe(r),
                Category.TRANSACTIONAL,
                0.72,
            ),
            _Rule(
                "transactional-shape",
                self._looks_transactional,
                Category.TRANSACTIONAL,
                0.60,
            ),
        ]

    def classify(self, record: EmailRecord) -> HeuristicResult:
        """Return the first matching rule's verdict, or ``unknown``/0.0."""
        for rule in self._ordered_rules:
            try:
                matched = rule.test(record)
            except Exception as exc:
                # A broken rule must not take the tier down; skip it
                counter("heuristics.rule_error")
                logger.warning("Heuristic rule %s failed on %s: %s", rule.name, record.id, exc)
                continue
            if matched:
                counter(f"heuristics.rule.{rule.name}")
                return HeuristicResult(rule.category_for(record), rule.confidence, rule.name)
        counter("heuristics.rule.no-signal")
        return NO_MATCH

    def is_resolved(self, result: HeuristicResult) -> bool:
        return result.category != Category.UNKNOWN and result.confidence >= self.threshold

    def classify_batch(
        self, records: Iterable[EmailRecord]
    ) -> tuple[dict[str, HeuristicResult], dict[str, HeuristicResult]]:
        """
        Classify many records and split them by the confidence gate.

        Returns:
            (resolved, unresolved), both keyed by email id. Unresolved entries
            keep their low-confidence guess so callers can pass it on as a hint.

        Side Effects:
            - Emits a ``heuristics.batch`` telemetry event with rule hit counts
        """
        resolved: dict[str, HeuristicResult] = {}
        unresolved: dict[str, HeuristicResult] = {}
        hits: Counter[str] = Counter()
        for record in records:
            result = self.classify(record)
            hits[result.rule] += 1
            if self.is_resolved(result):
                resolved[record.id] = result
            else:
                unresolved[record.id] = result
        log_event(
            "heuristics.batch",
            resolved=len(resolved),
            unresolved=len(unresolved),
            rules=dict(hits),
        )
        return resolved, unresolved

    def _marketing_or_newsletter(self, record: EmailRecord) -> Category:
        # Ambiguous bulk mail defaults to newsletter; promotions need a positive signal
        if record.has_campaign_header or record.has_marketing_mailer or self._matches_any(
            record.subject, self.rules.promotional_patterns
        ):
            return Category.MARKETING
        return Category.NEWSLETTER

    def _looks_transactional(self, record: EmailRecord) -> bool:
        if self._has_unsubscribe(record):
            return False
        if len(record.snippet) > self.rules.max_snippet_chars:
            return False
        if record.link_count == 0:
            return False
        links_per_kb = record.link_count * 1000.0 / max(record.body_length, 1)
        return links_per_kb >= self.rules.min_links_per_kb

    def _is_noreply(self, record: EmailRecord) -> bool:
        if record.is_noreply:
            return True
        local = record.sender_address.split("@", 1)[0]
        return local.startswith(self.rules.noreply_prefixes)

    @staticmethod
    def _has_unsubscribe(record: EmailRecord) -> bool:
        return record.has_list_unsubscribe or record.has_unsubscribe_text

    @staticmethod
    def _domain_in(record: EmailRecord, domains: frozenset[str]) -> bool:
        if not domains or not record.sender.domain:
            return False
        return any(candidate in domains for candidate in domain_and_parents(record.sender.domain))

    @staticmethod
    def _matches_any(text: str, patterns: tuple[re.Pattern[str], ...]) -> bool:
        return bool(text) and any(pattern.search(text) for pattern in patterns)
