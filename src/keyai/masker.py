"""PII masking for captured keystrokes.

The Masker holds an ordered catalog of MaskingRule objects. Each rule is an
independent regex plus a replacement generator that keeps just enough of the
original to stay useful (the last digits of a document number, the first
letter and domain of an email) while removing the identifying part.

Rules run in catalog order (priority descending, registration order for
ties) over the whole text. Later rules see the output of earlier ones, so
overlapping patterns are order-dependent; the default catalog is ordered so
that the longer document formats win over the shorter ones.
"""

from __future__ import annotations

import logging
import re
import threading
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field

from keyai.errors import PatternError
from keyai.models import CapturedEvent, WindowInfo

logger = logging.getLogger(__name__)

# Default priority for rules added at runtime; below every built-in rule.
CUSTOM_RULE_PRIORITY = 5


def _digits(text: str) -> str:
    return "".join(c for c in text if c.isdigit())


def mask_cpf(original: str) -> str:
    """Brazilian taxpayer id: keep the two check digits."""
    digits = _digits(original)
    if len(digits) >= 11:
        return f"***.***.***-{digits[-2:]}"
    return "***.***.**-**"


def mask_email(original: str) -> str:
    """Email: keep the first character of the local part and the domain."""
    at_pos = original.find("@")
    if at_pos <= 0:
        return "***@***"
    return f"{original[0]}***{original[at_pos:]}"


def mask_phone(original: str) -> str:
    """Phone number: keep the last four digits."""
    digits = _digits(original)
    if len(digits) >= 8:
        return f"(***) ***-{digits[-4:]}"
    return "(***) ***-****"


def mask_credit_card(original: str) -> str:
    """Card number: keep the last four digits."""
    digits = _digits(original)
    if len(digits) >= 4:
        return f"**** **** **** {digits[-4:]}"
    return "**** **** **** ****"


def mask_full(original: str) -> str:
    """Replace every character of the match."""
    return "*" * len(original)


def _fixed(template: str) -> Callable[[str], str]:
    def generate(_original: str) -> str:
        return template

    return generate


# WHAT: Replacement generators keyed by rule name.
# WHY: Rules registered at runtime under an unknown name get mask_full.
REPLACEMENT_GENERATORS: dict[str, Callable[[str], str]] = {
    "cpf": mask_cpf,
    "cnpj": _fixed("**.***.***/****-**"),
    "credit_card": mask_credit_card,
    "email": mask_email,
    "rg": _fixed("**.***.***-*"),
    "phone": mask_phone,
    "sensitive_url": _fixed("https://***?***=***"),
    "ipv4": _fixed("***.***.***.***"),
}


@dataclass
class MaskingRule:
    """A single redaction rule.

    Attributes:
        name: Unique rule name; also selects the replacement generator.
        pattern: Regular expression source.
        category: Free-form grouping (document, contact, financial, ...).
        enabled: Disabled rules are kept in the catalog but skipped.
        priority: Higher priorities run first.
        replacement: Optional generator overriding the name-based lookup.
    """

    name: str
    pattern: str
    category: str = "custom"
    enabled: bool = True
    priority: int = CUSTOM_RULE_PRIORITY
    replacement: Callable[[str], str] | None = None
    regex: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        try:
            self.regex = re.compile(self.pattern)
        except re.error as e:
            raise PatternError(self.name, self.pattern, str(e)) from e

    def generate(self, original: str) -> str:
        """Produce the replacement for one match."""
        generator = self.replacement or REPLACEMENT_GENERATORS.get(self.name)
        if generator is None:
            return mask_full(original)
        return generator(original)

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible dictionary (without the generator)."""
        return {
            "name": self.name,
            "pattern": self.pattern,
            "category": self.category,
            "enabled": self.enabled,
            "priority": self.priority,
        }


def default_rules() -> list[MaskingRule]:
    """Return a fresh copy of the built-in catalog, in application order."""
    return [
        MaskingRule("cpf", r"\b\d{3}\.?\d{3}\.?\d{3}-?\d{2}\b", "document", priority=10),
        MaskingRule("cnpj", r"\b\d{2}\.?\d{3}\.?\d{3}/?\d{4}-?\d{2}\b", "document", priority=10),
        MaskingRule("credit_card", r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b", "financial", priority=10),
        MaskingRule("email", r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b", "contact", priority=9),
        MaskingRule("rg", r"\b\d{1,2}\.?\d{3}\.?\d{3}-?[0-9X]\b", "document", priority=9),
        MaskingRule(
            "phone",
            r"(?:\+55\s?)?(?:\([1-9]{2}\)|\b[1-9]{2})\s?9?\d{4}-?\d{4}\b",
            "contact",
            priority=8,
        ),
        MaskingRule(
            "sensitive_url",
            r"https?://\S+(?:token|key|password|secret)=[^\s&]+",
            "security",
            priority=8,
        ),
        MaskingRule(
            "ipv4",
            r"\b(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\b",
            "network",
            priority=6,
        ),
    ]


class Masker:
    """Ordered, mutable catalog of masking rules.

    ``mask`` is pure with respect to the text: the only state it touches is
    the per-rule match counter used for diagnostics. The rule list is
    replaced wholesale on every change, so a concurrent ``mask`` call always
    sees either the old or the new catalog.

    Example:
        masker = Masker()
        masker.mask("Meu CPF é 123.456.789-01")  # 'Meu CPF é ***.***.***-01'
    """

    def __init__(self, rules: list[MaskingRule] | None = None):
        self._lock = threading.Lock()
        self._rules: tuple[MaskingRule, ...] = ()
        self._counts: Counter[str] = Counter()
        for rule in default_rules() if rules is None else rules:
            self.add_rule(rule)

    def mask(self, text: str) -> str:
        """Return ``text`` with every enabled rule applied in order."""
        if not text:
            return text

        masked = text
        for rule in self._rules:
            if not rule.enabled:
                continue
            masked, count = rule.regex.subn(lambda m, r=rule: r.generate(m.group(0)), masked)
            if count:
                logger.debug(f"Masked {count} match(es) for rule '{rule.name}'")
                with self._lock:
                    self._counts[rule.name] += count
        return masked

    def mask_event(self, event: CapturedEvent) -> CapturedEvent:
        """Mask the symbol and window context of a captured event."""
        window = event.window
        if window is not None:
            window = WindowInfo(
                title=self.mask(window.title),
                application=self.mask(window.application),
                pid=window.pid,
                timestamp=window.timestamp,
            )
        return event.with_masked(self.mask(event.symbol), window)

    def add_rule(self, rule: MaskingRule) -> None:
        """Insert a rule, replacing any existing rule with the same name."""
        with self._lock:
            rules = [r for r in self._rules if r.name != rule.name]
            rules.append(rule)
            # sorted() is stable: equal priorities keep registration order.
            self._rules = tuple(sorted(rules, key=lambda r: -r.priority))
        logger.debug(f"Masking rule registered: {rule.name} ({rule.category})")

    def add_custom_pattern(
        self,
        name: str,
        pattern: str,
        category: str = "custom",
        priority: int = CUSTOM_RULE_PRIORITY,
    ) -> MaskingRule:
        """Compile and register a rule from a raw pattern.

        Raises:
            PatternError: If ``pattern`` is not a valid regular expression.
                The catalog is left unchanged.
        """
        rule = MaskingRule(name=name, pattern=pattern, category=category, priority=priority)
        self.add_rule(rule)
        return rule

    def remove_rule(self, name: str) -> bool:
        """Remove a rule by name. Returns False if no such rule exists."""
        with self._lock:
            remaining = tuple(r for r in self._rules if r.name != name)
            removed = len(remaining) != len(self._rules)
            self._rules = remaining
        if removed:
            logger.info(f"Masking rule removed: {name}")
        return removed

    def set_enabled(self, name: str, enabled: bool) -> bool:
        """Enable or disable a rule. Returns False if no such rule exists."""
        with self._lock:
            for rule in self._rules:
                if rule.name == name:
                    rule.enabled = enabled
                    return True
        return False

    def list_rules(self) -> list[MaskingRule]:
        """Return the rules in application order."""
        return list(self._rules)

    def rule_names(self) -> list[str]:
        return [r.name for r in self._rules]

    def match_counts(self) -> dict[str, int]:
        """Snapshot of how many matches each rule has masked so far."""
        with self._lock:
            return dict(self._counts)


def build_masker(custom_patterns: list[dict], disabled_rules: list[str]) -> Masker:
    """Build the default catalog plus persisted custom rules.

    A stored pattern that no longer compiles is skipped with a warning;
    the other rules are still registered.

    Args:
        custom_patterns: Dicts with name, pattern and optional category
            and priority, as saved by ``keyai patterns add``.
        disabled_rules: Names of rules to register disabled.
    """
    masker = Masker()
    for entry in custom_patterns:
        try:
            masker.add_custom_pattern(
                entry["name"],
                entry["pattern"],
                category=entry.get("category", "custom"),
                priority=entry.get("priority", CUSTOM_RULE_PRIORITY),
            )
        except (KeyError, PatternError) as e:
            logger.warning(f"Skipping stored masking rule {entry!r}: {e}")
    for name in disabled_rules:
        if not masker.set_enabled(name, False):
            logger.warning(f"Cannot disable unknown masking rule '{name}'")
    return masker
