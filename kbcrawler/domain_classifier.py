"""
Domain Classifier
=================
Maps a URL to the authentication regime the scraper should expect.

Regimes
-------
- ``internal``            — company / collaboration hosts reached through the
                            host application's single sign-on session
- ``external_credential`` — vendor portals that need stored credentials
- ``public``              — everything else (no authentication expected)

Pattern syntax
--------------
- ``me.sap.com``       exact host
- ``*.company.com``    wildcard suffix (also matches the apex ``company.com``)
- ``*.internal``       TLD family: single-label suffix
- ``*.corp.*``         TLD family: interior label (at least one label on each side)

Precedence
----------
Internal rules are consulted before external rules, so ``*.company.com``
can never be shadowed by an external rule registered afterwards.  Within a
regime the most specific kind wins (exact > wildcard suffix > TLD family),
then the longest suffix, then registration order.

The classifier is a pure function over its pattern table: no I/O, no
mutable state after construction.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from .auth.site_rules import SALESFORCE_RULE, SAP_RULE, SERVICENOW_RULE, SiteRuleRegistry
from .errors import InvalidURL
from .models import Classification, DomainPattern, Regime
from .utils import normalize_host

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Default pattern table
# ---------------------------------------------------------------------------

_INTERNAL_PATTERNS: List[str] = [
    "*.company.com",
    "*.sharepoint.com",
    "*.onmicrosoft.com",
    "*.teams.microsoft.com",
    "*.office.com",
    "*.outlook.com",
    "*.atlassian.net",
    "*.atlassian.com",
    "*.corp.*",
    "*.internal",
    "*.intranet",
    "*.local",
]

_EXTERNAL_PATTERNS: List[Tuple[str, object]] = [
    ("launchpad.support.sap.com", SAP_RULE),
    ("*.support.sap.com", SAP_RULE),
    ("me.sap.com", SAP_RULE),
    ("*.salesforce.com", SALESFORCE_RULE),
    ("*.oracle.com", None),
    ("*.aws.amazon.com", None),
    ("*.azure.microsoft.com", None),
    ("*.servicenow.com", SERVICENOW_RULE),
    ("*.service-now.com", SERVICENOW_RULE),
    ("*.zendesk.com", None),
    ("*.freshdesk.com", None),
]


def default_patterns() -> List[DomainPattern]:
    """Built-in table: internal rules first, then external rules."""
    patterns = [DomainPattern(p, Regime.INTERNAL) for p in _INTERNAL_PATTERNS]
    patterns += [
        DomainPattern(p, Regime.EXTERNAL_CREDENTIAL, login_hints=rule)
        for p, rule in _EXTERNAL_PATTERNS
    ]
    return patterns


def load_patterns(path: str, site_rules: Optional[SiteRuleRegistry] = None) -> List[DomainPattern]:
    """Load extra patterns from a JSON list of ``{pattern, regime, site_rule}``.

    Args:
        path:       JSON file path.
        site_rules: Registry used to resolve ``site_rule`` names.

    Returns:
        Patterns in file order.
    """
    registry = site_rules or SiteRuleRegistry.with_builtins()
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    patterns: List[DomainPattern] = []
    for entry in data:
        rule = registry.get(entry["site_rule"]) if entry.get("site_rule") else None
        patterns.append(
            DomainPattern(
                pattern=entry["pattern"].strip().lower(),
                regime=Regime(entry["regime"]),
                login_hints=rule,
            )
        )
    logger.info(f"[CLASSIFY] Loaded {len(patterns)} domain patterns from {path}")
    return patterns


# ---------------------------------------------------------------------------
# Compiled rules
# ---------------------------------------------------------------------------

_EXACT, _SUFFIX, _FAMILY = 3, 2, 1


@dataclass(frozen=True)
class _CompiledRule:
    source: DomainPattern
    kind: int
    needle: str
    order: int

    def match_length(self, host: str) -> int:
        """Return the matched suffix length, or -1 if *host* does not match."""
        if self.kind == _EXACT:
            return len(self.needle) if host == self.needle else -1
        if self.kind == _SUFFIX:
            if host == self.needle or host.endswith("." + self.needle):
                return len(self.needle)
            return -1
        # TLD family: "corp" in "*.corp.*" matches an interior label; "internal" in "*.internal" the last label
        labels = host.split(".")
        if self.source.pattern.endswith(".*"):
            return len(self.needle) if self.needle in labels[1:-1] else -1
        return len(self.needle) if labels[-1] == self.needle else -1


def _compile(pattern: DomainPattern, order: int) -> _CompiledRule:
    raw = pattern.pattern.strip().lower()
    if not raw.startswith("*."):
        return _CompiledRule(pattern, _EXACT, raw, order)
    body = raw[2:]
    if body.endswith(".*"):
        return _CompiledRule(pattern, _FAMILY, body[:-2], order)
    if "." not in body:
        return _CompiledRule(pattern, _FAMILY, body, order)
    return _CompiledRule(pattern, _SUFFIX, body, order)


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------

_REGIME_PRECEDENCE = (Regime.INTERNAL, Regime.EXTERNAL_CREDENTIAL)


class DomainClassifier:
    """Deterministic URL → regime classifier over a fixed pattern table."""

    def __init__(self, patterns: Optional[Iterable[DomainPattern]] = None):
        source = list(patterns) if patterns is not None else default_patterns()
        self._rules: Tuple[_CompiledRule, ...] = tuple(
            _compile(p, i) for i, p in enumerate(source)
        )

    @property
    def patterns(self) -> List[DomainPattern]:
        return [r.source for r in self._rules]

    def classify(self, url: str) -> Classification:
        """Classify an absolute URL.

        Raises:
            InvalidURL: if *url* is not an absolute http(s) URL.
        """
        host = normalize_host(url)
        if host is None:
            raise InvalidURL(f"Cannot classify unparseable URL: {url!r}")

        for regime in _REGIME_PRECEDENCE:
            best: Optional[_CompiledRule] = None
            best_key = None
            for rule in self._rules:
                if rule.source.regime is not regime:
                    continue
                length = rule.match_length(host)
                if length < 0:
                    continue
                key = (rule.kind, length, -rule.order)
                if best_key is None or key > best_key:
                    best, best_key = rule, key
            if best is not None:
                logger.debug(
                    f"[CLASSIFY] {host} -> {regime.value} (pattern {best.source.pattern})"
                )
                return Classification(regime=regime, matched_pattern=best.source, host=host)

        return Classification(regime=Regime.PUBLIC, matched_pattern=None, host=host)
