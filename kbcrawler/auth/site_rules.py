"""
Site Rules
==========
Site-specific login selector sets, registered as data.

A ``SiteRule`` tells the login detector exactly which inputs a portal uses,
so a known portal is recognised with full confidence instead of relying on
generic heuristics.

Adding a portal:
    1. Build a ``SiteRule`` with its domains and selectors
    2. Call ``SiteRuleRegistry.register(rule)`` (or add it to ``BUILTIN_RULES``)
    3. No detector code changes are needed.

Usage::

    registry = SiteRuleRegistry.with_builtins()
    rule = registry.match("launchpad.support.sap.com")
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from ..models import SiteRule

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Built-in portals
# ---------------------------------------------------------------------------

SAP_RULE = SiteRule(
    name="sap",
    domains=("support.sap.com", "me.sap.com", "accounts.sap.com"),
    username=('#j_username', 'input[name="j_username"]', 'input[name="username"]', '#username'),
    password=('#j_password', 'input[name="j_password"]', 'input[name="password"]', '#password'),
    submit=('#logOnFormSubmit', 'button[type="submit"]', 'input[type="submit"]'),
    form='#logonForm',
)

SALESFORCE_RULE = SiteRule(
    name="salesforce",
    domains=("salesforce.com", "force.com"),
    username=('#username', 'input[name="username"]'),
    password=('#password', 'input[name="pw"]', 'input[name="password"]'),
    submit=('#Login', 'input[name="Login"]', 'input[type="submit"]'),
    form='#login_form',
)

SERVICENOW_RULE = SiteRule(
    name="servicenow",
    domains=("service-now.com", "servicenow.com"),
    username=('#user_name', 'input[name="user_name"]', 'input[name="username"]'),
    password=('#user_password', 'input[name="user_password"]', 'input[name="password"]'),
    submit=('#sysverb_login', 'button[type="submit"]'),
)

BUILTIN_RULES: List[SiteRule] = [SAP_RULE, SALESFORCE_RULE, SERVICENOW_RULE]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class SiteRuleRegistry:
    """Maps hosts to site rules by domain-suffix match.

    The longest matching domain wins, so ``launchpad.support.sap.com``
    resolves through ``support.sap.com`` before any broader entry.
    """

    def __init__(self, rules: Optional[Iterable[SiteRule]] = None):
        self._rules: Dict[str, SiteRule] = {}
        for rule in rules or ():
            self.register(rule)

    @classmethod
    def with_builtins(cls) -> "SiteRuleRegistry":
        return cls(BUILTIN_RULES)

    def register(self, rule: SiteRule) -> None:
        self._rules[rule.name.lower()] = rule
        logger.debug(f"[SITE-RULES] Registered rule: {rule.name}")

    def get(self, name: str) -> Optional[SiteRule]:
        return self._rules.get(name.lower())

    def names(self) -> List[str]:
        return list(self._rules.keys())

    def match(self, host: str) -> Optional[SiteRule]:
        """Return the rule whose domain is the longest suffix of *host*."""
        host = (host or "").lower()
        best: Optional[SiteRule] = None
        best_len = -1
        for rule in self._rules.values():
            for domain in rule.domains:
                if host == domain or host.endswith("." + domain):
                    if len(domain) > best_len:
                        best, best_len = rule, len(domain)
        return best
